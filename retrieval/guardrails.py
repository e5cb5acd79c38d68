"""Retrieval guardrails: tenant/site scoping and source type allowlisting.

Validation happens before any embedding or vector store call, so a rejected
request never touches a provider.
"""

from __future__ import annotations

import logging

from core.errors import GuardrailRule, ValidationError
from core.models import (
    ALL_SOURCE_TYPES,
    DEFAULT_RETRIEVAL_POLICY,
    RetrievalPolicy,
    RetrievalRequest,
    SourceType,
)

logger = logging.getLogger(__name__)

STRICT_POLICY = RetrievalPolicy.strict(ALL_SOURCE_TYPES)
PERMISSIVE_POLICY = RetrievalPolicy.permissive()


def _is_blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def validate_retrieval_request(
    request: RetrievalRequest,
    policy: RetrievalPolicy = DEFAULT_RETRIEVAL_POLICY,
) -> RetrievalRequest:
    """Check tenant/site scope and requested source types against ``policy``.

    Returns the request unchanged when every rule passes.

    Raises:
        ValidationError: missing tenant, missing site, or a requested
            source type outside the policy allowlist
    """
    if _is_blank(request.tenant_id):
        raise ValidationError(GuardrailRule.MISSING_TENANT, "tenant_id is required")
    if _is_blank(request.site_id):
        raise ValidationError(GuardrailRule.MISSING_SITE, "site_id is required")

    if request.source_types:
        invalid = [
            t for t in request.source_types
            if SourceType.parse(t) not in policy.allowed_source_types
        ]
        if invalid:
            raise ValidationError(
                GuardrailRule.DISALLOWED_SOURCE_TYPE,
                f"Source types not allowed: {', '.join(invalid)}",
                values=invalid,
            )

    return request


def sanitize_source_types(
    requested: list[str],
    policy: RetrievalPolicy = DEFAULT_RETRIEVAL_POLICY,
) -> list[SourceType]:
    """Drop unknown and disallowed types, deduplicating while keeping order."""
    sanitized: list[SourceType] = []
    for value in requested:
        source_type = SourceType.parse(value)
        if source_type is None or source_type not in policy.allowed_source_types:
            logger.debug("Dropping disallowed source type %r", value)
            continue
        if source_type not in sanitized:
            sanitized.append(source_type)
    return sanitized


def resolve_source_types(
    request: RetrievalRequest,
    policy: RetrievalPolicy = DEFAULT_RETRIEVAL_POLICY,
) -> list[SourceType]:
    """Validate ``request`` and return the source types retrieval may touch.

    A strict policy (``require_explicit_allowlist``) rejects disallowed types;
    a permissive one silently drops them. ``source_types=None`` selects every
    type the policy allows, as does an empty list. A permissive request whose
    requested types were all dropped resolves to an empty list, which
    retrieves nothing.
    """
    if policy.require_explicit_allowlist:
        validate_retrieval_request(request, policy)
    else:
        # Scope rules still apply; only the type rule is relaxed.
        validate_retrieval_request(request.model_copy(update={"source_types": None}), policy)

    if not request.source_types:
        return sorted(policy.allowed_source_types, key=lambda t: t.value)
    return sanitize_source_types(request.source_types, policy)
