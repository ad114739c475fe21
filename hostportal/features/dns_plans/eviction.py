"""
Domain eviction for plan downgrades.

The external host's inventory is authoritative: everything it lists whose
name is not being kept is deleted there, independently of the local rows.
Local rows are removed inside the caller's plan-change transaction.

Partial failure never raises. It is reported through EvictionResult so the
plan change can still complete.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hostportal.core.errors import InvalidDomainSelectionError
from hostportal.core.logging import log_event
from hostportal.features.dns_plans.subscriptions import delete_domain
from hostportal.features.provisioning.provider import ExternalResource, ProvisioningError, ProvisioningProvider
from hostportal.models.dns_plan import ManagedDomain

LOCAL_FAILURE_PREFIX = "Local DB: "


@dataclass
class EvictionFailure:
    name: str
    error: str


@dataclass
class EvictionResult:
    successful: List[str] = field(default_factory=list)
    failed: List[EvictionFailure] = field(default_factory=list)
    skipped_no_external_id: List[str] = field(default_factory=list)
    # Names seen in the external inventory; not part of the report
    inventory_names: Set[str] = field(default_factory=set, repr=False)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def to_dict(self) -> dict:
        return {
            "successful": list(self.successful),
            "failed": [{"name": f.name, "error": f.error} for f in self.failed],
            "skipped_no_external_id": list(self.skipped_no_external_id),
            "has_failures": self.has_failures,
        }


def select_domains_to_keep(
    domains: List[ManagedDomain],
    keep_domain_ids: Optional[List[int]],
    max_domains: int,
) -> Tuple[List[ManagedDomain], List[ManagedDomain]]:
    """
    Validate a keep-selection and split the user's domains into (kept, removed).

    Raises:
        InvalidDomainSelectionError: Wrong count, duplicates, or ids the user does not own
    """
    keep_ids = list(keep_domain_ids or [])
    if len(keep_ids) != max_domains:
        raise InvalidDomainSelectionError(
            f"You must select exactly {max_domains} domain(s) to keep",
            details={"required": max_domains, "selected": len(keep_ids)},
        )
    if len(set(keep_ids)) != len(keep_ids):
        raise InvalidDomainSelectionError("Duplicate domain ids in selection")

    owned = {d.id: d for d in domains}
    unknown = [i for i in keep_ids if i not in owned]
    if unknown:
        raise InvalidDomainSelectionError(
            "Selected domains do not belong to this account",
            details={"invalid_domain_ids": unknown},
        )

    keep_set = set(keep_ids)
    kept = [d for d in domains if d.id in keep_set]
    removed = [d for d in domains if d.id not in keep_set]
    return kept, removed


def _delete_one(provider: ProvisioningProvider, resource: ExternalResource) -> Tuple[str, Optional[str]]:
    try:
        provider.delete_resource(resource.id)
        return resource.name, None
    except ProvisioningError as e:
        return resource.name, str(e)


def delete_external_resources(
    user_id: str,
    kept_names: List[str],
    provider: Optional[ProvisioningProvider],
    *,
    max_workers: int = 1,
    transaction_id: Optional[int] = None,
) -> EvictionResult:
    """
    Delete every external resource not among kept_names.

    A failed or unavailable inventory listing is logged and treated as empty.
    """
    result = EvictionResult()

    inventory: List[ExternalResource] = []
    if provider is None:
        log_event(
            "warning",
            "dns_eviction.provider_unavailable",
            user_id=user_id,
            event_type="dns_eviction",
            extra={"transaction_id": transaction_id},
        )
    else:
        try:
            inventory = provider.list_resources()
        except ProvisioningError as e:
            log_event(
                "error",
                "dns_eviction.list_failed",
                user_id=user_id,
                event_type="dns_eviction",
                error_code="provisioning_error",
                extra={"transaction_id": transaction_id, "error": str(e)},
            )

    result.inventory_names = {r.name for r in inventory}
    keep = set(kept_names)
    to_delete = [r for r in inventory if r.name not in keep]
    if not to_delete:
        return result

    if max_workers > 1 and len(to_delete) > 1:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(to_delete))) as executor:
            outcomes = list(executor.map(lambda r: _delete_one(provider, r), to_delete))
    else:
        outcomes = [_delete_one(provider, r) for r in to_delete]

    # executor.map preserves input order, so merging by name stays deterministic
    for name, error in outcomes:
        if error is None:
            result.successful.append(name)
        else:
            result.failed.append(EvictionFailure(name=name, error=error))
            log_event(
                "error",
                "dns_eviction.external_delete_failed",
                user_id=user_id,
                event_type="dns_eviction",
                error_code="provisioning_error",
                extra={"transaction_id": transaction_id, "domain": name, "error": error},
            )

    return result


def delete_local_domains(
    session: Session,
    user_id: str,
    domains_to_remove: List[ManagedDomain],
    result: EvictionResult,
    *,
    transaction_id: Optional[int] = None,
) -> EvictionResult:
    """
    Remove local domain rows, recording failures on the same result.

    Each delete runs in its own savepoint so a failed row leaves the
    caller's transaction usable.
    """
    for domain in domains_to_remove:
        try:
            with session.begin_nested():
                delete_domain(session, user_id, domain.id)
        except SQLAlchemyError as e:
            result.failed.append(EvictionFailure(name=domain.name, error=f"{LOCAL_FAILURE_PREFIX}{e}"))
            log_event(
                "error",
                "dns_eviction.local_delete_failed",
                user_id=user_id,
                event_type="dns_eviction",
                error_code="database_error",
                extra={"transaction_id": transaction_id, "domain": domain.name, "error": str(e)},
            )
            continue

        if domain.external_id is None and domain.name not in result.inventory_names:
            result.skipped_no_external_id.append(domain.name)

    return result
