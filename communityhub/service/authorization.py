"""Ownership and identity-injection checks for mutating forum requests.

Two ownership modes coexist:

* strict (comments): an unset or placeholder owner id means nobody may mutate
  the resource.
* lenient (posts): an unset or placeholder owner id leaves the resource open
  to any authenticated caller.

Seeded posts carry the ``legacy`` placeholder owner.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from communityhub.logging import get_logger
from communityhub.service.errors import OwnershipViolation, ValidationError

logger = get_logger(__name__)

# Owner values that mean "nobody verifiable"
PLACEHOLDER_OWNER_IDS = frozenset({"", "legacy", "null", "none", "undefined"})

# Body keys a client could use to claim an identity
IDENTITY_BODY_FIELDS = (
    "userId",
    "user_id",
    "user",
    "ownerUserId",
    "owner_user_id",
    "authorId",
    "author_id",
)

# Query keys rejected on mutating requests
IDENTITY_QUERY_FIELDS = ("userId", "user_id", "user")


@dataclass(frozen=True)
class OwnershipDecision:
    authorized: bool
    status_code: int = 200
    message: Optional[str] = None
    # True when a lenient check let a caller through on an unowned resource
    unowned: bool = False


def normalize_owner_id(value: Any) -> str:
    return str(value if value is not None else "").strip()


def is_placeholder_owner(value: Any) -> bool:
    return normalize_owner_id(value).lower() in PLACEHOLDER_OWNER_IDS


def log_unauthorized_access(
    *,
    reason: str,
    resource_kind: str,
    resource_id: Optional[str],
    resource_owner_id: Any,
    caller_id: Optional[str],
) -> None:
    logger.warning(
        "unauthorized_access_attempt",
        reason=reason,
        resource_kind=resource_kind,
        resource_id=resource_id,
        claimed_owner=normalize_owner_id(resource_owner_id) or None,
        caller_id=caller_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


def check_ownership(
    resource_owner_id: Any,
    caller_id: Optional[str],
    resource_kind: str,
    *,
    strict: bool,
    resource_id: Optional[str] = None,
) -> OwnershipDecision:
    """Decide whether ``caller_id`` may mutate a resource owned by ``resource_owner_id``.

    Comparison is an exact string match after trimming. Every rejection is
    written to the audit log.
    """
    owner = normalize_owner_id(resource_owner_id)
    caller = normalize_owner_id(caller_id)

    if not caller or caller.lower() in PLACEHOLDER_OWNER_IDS:
        log_unauthorized_access(
            reason="caller_unverified",
            resource_kind=resource_kind,
            resource_id=resource_id,
            resource_owner_id=resource_owner_id,
            caller_id=caller_id,
        )
        return OwnershipDecision(False, 403, "Caller identity cannot be verified")

    if is_placeholder_owner(owner):
        if not strict:
            return OwnershipDecision(True, unowned=True)
        log_unauthorized_access(
            reason="owner_unverifiable",
            resource_kind=resource_kind,
            resource_id=resource_id,
            resource_owner_id=resource_owner_id,
            caller_id=caller_id,
        )
        return OwnershipDecision(
            False, 403, f"{resource_kind.capitalize()} ownership cannot be verified"
        )

    if owner != caller:
        log_unauthorized_access(
            reason="owner_mismatch",
            resource_kind=resource_kind,
            resource_id=resource_id,
            resource_owner_id=resource_owner_id,
            caller_id=caller_id,
        )
        return OwnershipDecision(False, 403, f"You can only modify your own {resource_kind}s")

    return OwnershipDecision(True)


def enforce_ownership(
    resource_owner_id: Any,
    caller_id: Optional[str],
    resource_kind: str,
    *,
    strict: bool,
    resource_id: Optional[str] = None,
) -> OwnershipDecision:
    """``check_ownership`` that raises ``OwnershipViolation`` on rejection."""
    decision = check_ownership(
        resource_owner_id,
        caller_id,
        resource_kind,
        strict=strict,
        resource_id=resource_id,
    )
    if not decision.authorized:
        raise OwnershipViolation(
            decision.message or "forbidden",
            detail={"resource_kind": resource_kind, "resource_id": resource_id},
        )
    return decision


def validate_no_owner_id_in_body(
    body: Any, *, fields: Iterable[str] = IDENTITY_BODY_FIELDS
) -> None:
    """Reject bodies that try to set an owner or user identity directly."""
    if not isinstance(body, Mapping):
        return
    for name in fields:
        if body.get(name) is not None:
            logger.warning("security_violation", kind="identity_in_body", field=name)
            raise ValidationError(
                f"User ID cannot be specified in request body (field: {name})",
                detail={"field": name},
            )


def sanitize_body(body: Mapping[str, Any], *, fields: Iterable[str] = IDENTITY_BODY_FIELDS) -> Dict[str, Any]:
    """Copy of ``body`` with identity fields removed."""
    blocked = set(fields)
    return {key: value for key, value in body.items() if key not in blocked}


def validate_no_identity_in_query(
    query: Mapping[str, Any], *, method: str, path: str
) -> None:
    for name in IDENTITY_QUERY_FIELDS:
        if name in query:
            logger.warning(
                "security_violation",
                kind="identity_in_query",
                field=name,
                method=method,
                path=path,
            )
            raise ValidationError(
                "User identity cannot be specified in query parameters",
                detail={"field": name},
            )


__all__ = [
    "OwnershipDecision",
    "PLACEHOLDER_OWNER_IDS",
    "IDENTITY_BODY_FIELDS",
    "check_ownership",
    "enforce_ownership",
    "is_placeholder_owner",
    "log_unauthorized_access",
    "sanitize_body",
    "validate_no_identity_in_query",
    "validate_no_owner_id_in_body",
]
