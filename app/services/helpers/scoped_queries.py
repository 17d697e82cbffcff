"""
Tenant-scoped query helpers.

Every get-by-id in the scheduling core goes through these helpers instead
of db.session.get(Model, pk). A direct .get() bypasses tenant isolation,
and cross-tenant references are the one thing every operation must reject
unconditionally.

Usage:
    contract = get_scoped(StandingReservationContract, contract_id, tenant_id=tenant_id)

    # Lock the row for the rest of the transaction (SELECT ... FOR UPDATE)
    resource = get_scoped(Resource, resource_id, tenant_id=tenant_id, for_update=True)

    # When None is an acceptable outcome (optional FK lookups)
    location = get_scoped_or_none(Location, location_id, tenant_id=tenant_id)

Cross-tenant access is indistinguishable from a missing record: both raise
NotFoundError → HTTP 404.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk: int, *, tenant_id: int | None, for_update: bool = False):
    """Fetch a single entity by PK, filtered by tenant.

    Args:
        model: A TenantModel subclass.
        pk: Primary key value to look up.
        tenant_id: Caller's tenant. Mandatory; None is a programming error.
        for_update: Emit SELECT ... FOR UPDATE (ignored by SQLite).

    Raises:
        ValueError: tenant_id missing, or the model has no tenant_id column.
        NotFoundError: entity missing OR owned by another tenant.
    """
    if tenant_id is None:
        raise ValueError(
            f"{model.__name__} id={pk} requires tenant_id. "
            "Unscoped lookups are forbidden — they bypass tenant isolation."
        )
    if not hasattr(model, "tenant_id"):
        raise ValueError(f"{model.__name__} is not tenant-scoped; refusing an unscoped lookup")

    stmt = select(model).where(model.id == pk, model.tenant_id == tenant_id)
    if for_update:
        stmt = stmt.with_for_update()

    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found for tenant=%s", model.__name__, pk, tenant_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk, tenant_id=tenant_id)
    return result


def get_scoped_or_none(model, pk: int | None, *, tenant_id: int | None):
    """Same as get_scoped but returns None for a missing/foreign row or a None pk."""
    if pk is None:
        return None
    try:
        return get_scoped(model, pk, tenant_id=tenant_id)
    except NotFoundError:
        return None
