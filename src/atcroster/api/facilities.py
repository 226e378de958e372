"""Facility operations: details, settings, credentials, roster and transfers.

Access rules:
- Anyone can list facilities and read a facility summary or its roster
- Roster emails are visible to that facility's staff, org staff, or a
  caller presenting the facility's service key
- ATM, DATM and WM (or org staff) update settings; only ATM, DATM and
  WM rotate credentials
- Senior staff (or org staff) remove controllers and resolve transfers
"""

import json
import logging
import secrets
from urllib.parse import urlparse

from cachetools import TTLCache
from jwt.algorithms import HMACAlgorithm

from atcroster.auth import Principal, service_key_matches
from atcroster.core.config import get_roster_config
from atcroster.core.results import ErrorKind, Outcome
from atcroster.guard import AuthorizationGuard, Operation
from atcroster.notifications import get_dispatcher
from atcroster.roster.models import Facility, TransferStatus, normalize_facility_code
from atcroster.roster.store import RosterStore
from atcroster.transfers import TransferWorkflow

logger = logging.getLogger(__name__)

_URL_FIELDS = ("url", "uls_return", "uls_dev_return")

_summary_cache: TTLCache[str, dict] | None = None


def _get_summary_cache() -> TTLCache[str, dict]:
    global _summary_cache
    if _summary_cache is None:
        _summary_cache = TTLCache(maxsize=256, ttl=get_roster_config().facility_cache_ttl)
    return _summary_cache


def clear_facility_cache(facility_id: str | None = None) -> None:
    """Drop one cached facility summary, or all of them."""
    cache = _get_summary_cache()
    if facility_id is None:
        cache.clear()
    else:
        cache.pop(facility_id.upper(), None)


def _valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


async def _load_active(store: RosterStore, facility_id: str) -> Facility | None:
    try:
        code = normalize_facility_code(facility_id)
    except ValueError:
        return None
    facility = await store.get_facility(code)
    if facility is None or not facility.active:
        return None
    return facility


def _not_found() -> Outcome:
    return Outcome.failure(ErrorKind.NOT_FOUND, "Facility not found or not active")


# ---------------------------------------------------------------------------
# Public reads
# ---------------------------------------------------------------------------


async def list_facilities() -> Outcome:
    """List active facilities (public fields only)."""
    async with RosterStore() as store:
        facilities = await store.list_facilities()

    return Outcome.success(facilities=[f.to_public() for f in facilities])


async def get_facility(facility_id: str) -> Outcome:
    """Get a facility summary: details, staff roles and counts.

    Summaries are cached briefly. The facility's existence and active
    flag are re-checked on every call so a deactivated facility stops
    being served immediately.
    """
    async with RosterStore() as store:
        facility = await _load_active(store, facility_id)
        if facility is None:
            return _not_found()

        cache = _get_summary_cache()
        summary = cache.get(facility.id)
        if summary is not None:
            logger.debug("Facility summary cache hit: %s", facility.id)
            return Outcome.success(**summary)

        roles = await store.list_roles(facility=facility.id)
        members = await store.list_facility_members(facility.id)
        pending = await store.list_transfers(
            to_facility=facility.id, status=TransferStatus.PENDING
        )

    names = {c.cid: c.full_name for c in members}
    summary = {
        "facility": facility.to_public(),
        "roles": [
            {"cid": r.cid, "role": r.role.value, "name": names.get(r.cid, "")}
            for r in sorted(roles, key=lambda r: (r.role.value, r.cid))
        ],
        "controllers": len(members),
        "pending_transfers": len(pending),
    }
    cache[facility.id] = summary
    return Outcome.success(**summary)


async def get_roster(
    principal: Principal | None,
    facility_id: str,
    api_key: str | None = None,
) -> Outcome:
    """List a facility's home controllers.

    Emails are redacted unless the caller is staff at this facility,
    org staff, or presents the facility's service key.
    """
    async with RosterStore() as store:
        facility = await _load_active(store, facility_id)
        if facility is None:
            return _not_found()

        guard = AuthorizationGuard(store)
        verdict = await guard.check(
            principal,
            Operation.READ_ROSTER_EMAILS,
            facility.id,
            service_key=service_key_matches(facility, api_key),
        )
        members = await store.list_facility_members(facility.id)

    return Outcome.success(
        facility=facility.id,
        controllers=[c.to_public(include_email=verdict.allowed) for c in members],
    )


# ---------------------------------------------------------------------------
# Settings and credentials
# ---------------------------------------------------------------------------


async def update_facility(
    principal: Principal | None,
    facility_id: str,
    *,
    url: str | None = None,
    uls_return: str | None = None,
    uls_dev_return: str | None = None,
) -> Outcome:
    """Update a facility's website and login return URLs.

    Fields left as None are unchanged. An empty string clears a field.
    """
    changes = {
        name: value.strip()
        for name, value in zip(_URL_FIELDS, (url, uls_return, uls_dev_return), strict=True)
        if value is not None
    }

    async with RosterStore() as store:
        facility = await _load_active(store, facility_id)
        if facility is None:
            return _not_found()

        verdict = await AuthorizationGuard(store).check(
            principal, Operation.UPDATE_FACILITY, facility.id
        )
        if not verdict.allowed:
            return verdict.to_outcome()

        invalid = [name for name, value in changes.items() if value and not _valid_url(value)]
        if invalid:
            return Outcome.failure(
                ErrorKind.MALFORMED, "Malformed request: invalid URL", fields=invalid
            )

        if not changes:
            return Outcome.success(facility=facility.to_public())

        updated = facility.model_copy(update=changes)
        await store.upsert_facility(updated)

    clear_facility_cache(updated.id)
    logger.info("Facility %s updated by %s: %s", updated.id, principal.cid, sorted(changes))
    return Outcome.success(facility=updated.to_public())


def _random_jwk() -> str:
    jwk = HMACAlgorithm.to_jwk(secrets.token_bytes(32), as_dict=True)
    jwk.update({"alg": "HS256", "use": "sig"})
    return json.dumps(jwk)


# Credential kind -> (facility field, generator)
_CREDENTIALS = {
    "apikey": ("api_key", lambda: secrets.token_hex(16)),
    "apikeySandbox": ("api_sandbox_key", lambda: secrets.token_hex(16)),
    "ulsSecret": ("uls_secret", lambda: secrets.token_hex(8)),
    "uls2jwk": ("uls_jwk", _random_jwk),
    "apiv2jwk": ("apiv2_jwk", _random_jwk),
}


async def rotate_credentials(
    principal: Principal | None,
    facility_id: str,
    kinds: list[str],
) -> Outcome:
    """Generate fresh integration credentials for a facility.

    Args:
        principal: Acting controller
        facility_id: Facility code
        kinds: Any of ``apikey``, ``apikeySandbox``, ``ulsSecret``,
            ``uls2jwk``, ``apiv2jwk``

    Returns:
        Success with the new values keyed by kind
    """
    async with RosterStore() as store:
        facility = await _load_active(store, facility_id)
        if facility is None:
            return _not_found()

        verdict = await AuthorizationGuard(store).check(
            principal, Operation.ROTATE_CREDENTIALS, facility.id
        )
        if not verdict.allowed:
            return verdict.to_outcome()

        unknown = [k for k in kinds if k not in _CREDENTIALS]
        if not kinds or unknown:
            return Outcome.failure(
                ErrorKind.MALFORMED,
                "Malformed request: unknown credential kind",
                kinds=unknown,
            )

        generated = {}
        changes = {}
        for kind in dict.fromkeys(kinds):
            field_name, generate = _CREDENTIALS[kind]
            value = generate()
            generated[kind] = value
            changes[field_name] = value

        await store.upsert_facility(facility.model_copy(update=changes))

    logger.info("Rotated %s for %s by %s", sorted(generated), facility.id, principal.cid)
    return Outcome.success(facility=facility.id, credentials=generated)


# ---------------------------------------------------------------------------
# Roster and transfer management
# ---------------------------------------------------------------------------


async def remove_from_roster(
    principal: Principal | None,
    facility_id: str,
    cid: int,
    reason: str,
) -> Outcome:
    """Remove a controller from a facility into the unassigned pool."""
    async with RosterStore() as store:
        outcome = await TransferWorkflow(store, get_dispatcher()).remove_from_facility(
            principal, facility_id, cid, reason
        )

    if outcome.ok:
        clear_facility_cache(facility_id)
    return outcome


async def list_pending_transfers(
    principal: Principal | None,
    facility_id: str,
    api_key: str | None = None,
) -> Outcome:
    """List pending transfers into a facility, oldest first."""
    async with RosterStore() as store:
        facility = await _load_active(store, facility_id)
        if facility is None:
            return _not_found()

        verdict = await AuthorizationGuard(store).check(
            principal,
            Operation.LIST_PENDING_TRANSFERS,
            facility.id,
            service_key=service_key_matches(facility, api_key),
        )
        if not verdict.allowed:
            return verdict.to_outcome()

        pending = await store.list_transfers(
            to_facility=facility.id, status=TransferStatus.PENDING
        )
        transfers = []
        for transfer in reversed(pending):
            controller = await store.get_controller(transfer.cid)
            summary = transfer.to_summary()
            summary["name"] = controller.full_name if controller else ""
            summary["rating"] = controller.rating.short if controller else ""
            transfers.append(summary)

    return Outcome.success(facility=facility.id, transfers=transfers)


async def resolve_transfer(
    principal: Principal | None,
    facility_id: str,
    transfer_id: str,
    action: str,
    reason: str = "",
) -> Outcome:
    """Accept or reject a pending transfer into a facility.

    Args:
        action: ``accept`` or ``reject``
        reason: Required when rejecting
    """
    async with RosterStore() as store:
        outcome = await TransferWorkflow(store, get_dispatcher()).resolve(
            principal, facility_id, transfer_id, action, reason
        )

    if outcome.ok:
        transfer = outcome.data["transfer"]
        clear_facility_cache(transfer["from"])
        clear_facility_cache(transfer["to"])
    return outcome
