"""Async Cosmos DB operations for roster documents.

Internal implementation detail -- callers go through the guard and the
transfer workflow before anything here is written.

When ``COSMOS_ENDPOINT`` is not set, falls back to an in-memory store
for local development and testing.
"""

import logging
import os
from typing import ClassVar, Self

from dotenv import load_dotenv

from atcroster.core.config import get_cosmos_database
from atcroster.roster.models import (
    Controller,
    ExamResult,
    Facility,
    PromotionRecord,
    RoleAssignment,
    TransferRequest,
    TransferStatus,
)

logger = logging.getLogger(__name__)

CONTROLLERS = "controllers"
FACILITIES = "facilities"
ROLES = "roles"
TRANSFERS = "transfers"
PROMOTIONS = "promotions"
EXAM_RESULTS = "exam-results"

# Marker documents live beside a controller's transfers (same partition) and
# hold the id of their one pending request. Queries skip them.
PENDING_MARKER_PREFIX = "pending-"


def _pending_marker_id(cid: int) -> str:
    return f"{PENDING_MARKER_PREFIX}{cid}"


class RosterStore:
    """Async read/write for controllers, facilities, roles and transfers.

    Falls back to in-memory storage when Cosmos DB is not configured.
    Partition keys: ``id`` for controllers and facilities, ``cid`` for
    everything keyed to a controller.

    Usage::

        async with RosterStore() as store:
            controller = await store.get_controller(1234567)
            pending = await store.list_transfers(to_facility="ZAB", status="pending")
    """

    # Shared in-memory store across instances: container name -> id -> document
    _memory: ClassVar[dict[str, dict[str, dict]]] = {}

    def __init__(self) -> None:
        """Initialize store. Call ``__aenter__`` to connect."""
        self._client = None
        self._database = None
        self._containers: dict = {}
        self._credential = None
        self._in_memory = False

    async def __aenter__(self) -> Self:
        """Connect to Cosmos DB, or fall back to in-memory mode."""
        load_dotenv()

        endpoint = os.getenv("COSMOS_ENDPOINT")
        key = os.getenv("COSMOS_KEY")

        if key:
            from azure.cosmos.aio import CosmosClient

            self._client = CosmosClient(endpoint, credential=key)
        elif endpoint:
            from azure.cosmos.aio import CosmosClient
            from azure.identity.aio import DefaultAzureCredential

            self._credential = DefaultAzureCredential()
            self._client = CosmosClient(endpoint, credential=self._credential)
        else:
            logger.warning("No COSMOS_ENDPOINT set — using in-memory roster store (dev only)")
            self._in_memory = True
            return self

        self._database = self._client.get_database_client(get_cosmos_database())
        logger.info("Connected to Cosmos DB: %s", get_cosmos_database())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close connections."""
        if self._client:
            await self._client.close()
            self._client = None
        if self._credential:
            await self._credential.close()
            self._credential = None
        self._database = None
        self._containers = {}

    @property
    def in_memory(self) -> bool:
        return self._in_memory

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    def _mem(self, name: str) -> dict[str, dict]:
        return self._memory.setdefault(name, {})

    def _container(self, name: str):
        if name not in self._containers:
            self._containers[name] = self._database.get_container_client(name)
        return self._containers[name]

    async def _read(self, name: str, item_id: str, partition_key: str | int) -> dict | None:
        if self._in_memory:
            return self._mem(name).get(item_id)

        from azure.cosmos.exceptions import CosmosResourceNotFoundError

        try:
            return await self._container(name).read_item(
                item=item_id, partition_key=partition_key
            )
        except CosmosResourceNotFoundError:
            logger.debug("%s document not found: %s", name, item_id)
            return None

    async def _upsert(self, name: str, body: dict) -> None:
        if self._in_memory:
            self._mem(name)[body["id"]] = body
            return
        await self._container(name).upsert_item(body=body)

    async def _query(self, name: str, query: str, parameters: list[dict]) -> list[dict]:
        items = []
        async for item in self._container(name).query_items(
            query=query,
            parameters=parameters or None,
        ):
            items.append(item)
        return items

    # ------------------------------------------------------------------
    # Controllers
    # ------------------------------------------------------------------

    async def get_controller(self, cid: int) -> Controller | None:
        """Get a controller by CID."""
        data = await self._read(CONTROLLERS, str(cid), str(cid))
        return Controller.from_cosmos(data) if data else None

    async def upsert_controller(self, controller: Controller) -> Controller:
        """Create or replace a controller document."""
        await self._upsert(CONTROLLERS, controller.to_cosmos())
        logger.debug("Upserted controller %s", controller.cid)
        return controller

    async def list_facility_members(self, facility: str) -> list[Controller]:
        """List active controllers whose home facility is ``facility``.

        Returns:
            Controllers sorted by last name, then first name
        """
        if self._in_memory:
            members = [
                Controller.from_cosmos(data)
                for data in self._mem(CONTROLLERS).values()
                if data.get("facility") == facility and data.get("active", True)
            ]
        else:
            items = await self._query(
                CONTROLLERS,
                "SELECT * FROM c WHERE c.facility = @facility AND c.active = true",
                [{"name": "@facility", "value": facility}],
            )
            members = [Controller.from_cosmos(item) for item in items]

        members.sort(key=lambda c: (c.last_name.lower(), c.first_name.lower(), c.cid))
        return members

    # ------------------------------------------------------------------
    # Facilities
    # ------------------------------------------------------------------

    async def get_facility(self, code: str) -> Facility | None:
        """Get a facility by its three-character code."""
        code = code.upper()
        data = await self._read(FACILITIES, code, code)
        return Facility.from_cosmos(data) if data else None

    async def list_facilities(self, *, active_only: bool = True) -> list[Facility]:
        """List facilities, sorted by code."""
        if self._in_memory:
            facilities = [
                Facility.from_cosmos(data)
                for data in self._mem(FACILITIES).values()
                if data.get("active") or not active_only
            ]
        else:
            query = "SELECT * FROM c WHERE c.active = true" if active_only else "SELECT * FROM c"
            items = await self._query(FACILITIES, query, [])
            facilities = [Facility.from_cosmos(item) for item in items]

        facilities.sort(key=lambda f: f.id)
        return facilities

    async def upsert_facility(self, facility: Facility) -> Facility:
        """Create or replace a facility document."""
        await self._upsert(FACILITIES, facility.to_cosmos())
        logger.debug("Upserted facility %s", facility.id)
        return facility

    # ------------------------------------------------------------------
    # Role assignments
    # ------------------------------------------------------------------

    async def list_roles(
        self,
        *,
        cid: int | None = None,
        facility: str | None = None,
    ) -> list[RoleAssignment]:
        """List role assignments, optionally filtered by controller and/or facility."""
        if self._in_memory:
            return [
                RoleAssignment.from_cosmos(data)
                for data in self._mem(ROLES).values()
                if (cid is None or data.get("cid") == cid)
                and (facility is None or data.get("facility") == facility)
            ]

        conditions = []
        parameters = []
        if cid is not None:
            conditions.append("c.cid = @cid")
            parameters.append({"name": "@cid", "value": cid})
        if facility is not None:
            conditions.append("c.facility = @facility")
            parameters.append({"name": "@facility", "value": facility})

        where_clause = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        items = await self._query(ROLES, f"SELECT * FROM c{where_clause}", parameters)
        return [RoleAssignment.from_cosmos(item) for item in items]

    async def add_role(self, role: RoleAssignment) -> RoleAssignment:
        """Grant a role. Granting an already-held role is a no-op overwrite."""
        await self._upsert(ROLES, role.to_cosmos())
        logger.info("Granted %s at %s to %s", role.role, role.facility, role.cid)
        return role

    async def remove_role(self, role: RoleAssignment) -> None:
        """Revoke a role assignment. Missing assignments are ignored."""
        if self._in_memory:
            self._mem(ROLES).pop(role.id, None)
        else:
            from azure.cosmos.exceptions import CosmosResourceNotFoundError

            try:
                await self._container(ROLES).delete_item(item=role.id, partition_key=role.cid)
            except CosmosResourceNotFoundError:
                logger.debug("Role %s already removed", role.id)
                return
        logger.info("Revoked %s at %s from %s", role.role, role.facility, role.cid)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def get_transfer(self, transfer_id: str) -> TransferRequest | None:
        """Find a transfer by document ID (cross-partition)."""
        if self._in_memory:
            data = self._mem(TRANSFERS).get(transfer_id)
            return TransferRequest.from_cosmos(data) if data else None

        items = await self._query(
            TRANSFERS,
            "SELECT * FROM c WHERE c.id = @id AND NOT IS_DEFINED(c.marker)",
            [{"name": "@id", "value": transfer_id}],
        )
        return TransferRequest.from_cosmos(items[0]) if items else None

    async def list_transfers(
        self,
        *,
        cid: int | None = None,
        to_facility: str | None = None,
        status: TransferStatus | str | None = None,
    ) -> list[TransferRequest]:
        """List transfers, newest first.

        Args:
            cid: Only transfers for this controller
            to_facility: Only transfers into this facility
            status: Only transfers in this status
        """
        status_value = TransferStatus(status).value if status else None

        if self._in_memory:
            transfers = [
                TransferRequest.from_cosmos(data)
                for data in self._mem(TRANSFERS).values()
                if (cid is None or data.get("cid") == cid)
                and (to_facility is None or data.get("to_facility") == to_facility)
                and (status_value is None or data.get("status") == status_value)
            ]
        else:
            conditions = ["NOT IS_DEFINED(c.marker)"]
            parameters = []
            if cid is not None:
                conditions.append("c.cid = @cid")
                parameters.append({"name": "@cid", "value": cid})
            if to_facility is not None:
                conditions.append("c.to_facility = @to")
                parameters.append({"name": "@to", "value": to_facility})
            if status_value is not None:
                conditions.append("c.status = @status")
                parameters.append({"name": "@status", "value": status_value})

            query = f"SELECT * FROM c WHERE {' AND '.join(conditions)}"
            items = await self._query(TRANSFERS, query, parameters)
            transfers = [TransferRequest.from_cosmos(item) for item in items]

        transfers.sort(key=lambda t: t.created_at, reverse=True)
        return transfers

    async def create_transfer(self, transfer: TransferRequest) -> TransferRequest:
        """Write a new transfer record."""
        if self._in_memory:
            self._mem(TRANSFERS)[transfer.id] = transfer.to_cosmos()
            logger.info("Created transfer %s for %s (in-memory)", transfer.id, transfer.cid)
            return transfer

        result = await self._container(TRANSFERS).create_item(body=transfer.to_cosmos())
        logger.info("Created transfer %s for %s", transfer.id, transfer.cid)
        return TransferRequest.from_cosmos(result)

    async def create_pending_transfer(self, transfer: TransferRequest) -> bool:
        """Write a new pending request unless the controller already has one.

        The check and the write are one atomic step: on Cosmos DB the
        transfer and the controller's pending marker are created in a single
        transactional batch, so a second replica racing on the same CID
        fails on the marker instead of writing a second pending request.

        Returns:
            True if the request was written, False if one was already pending
        """
        if self._in_memory:
            # No await between the check and the write
            transfers = self._mem(TRANSFERS)
            if any(
                data.get("cid") == transfer.cid
                and data.get("status") == TransferStatus.PENDING.value
                for data in transfers.values()
            ):
                return False
            transfers[transfer.id] = transfer.to_cosmos()
            logger.info("Created transfer %s for %s (in-memory)", transfer.id, transfer.cid)
            return True

        from azure.cosmos.exceptions import CosmosBatchOperationError

        marker = {
            "id": _pending_marker_id(transfer.cid),
            "cid": transfer.cid,
            "transfer_id": transfer.id,
            "marker": True,
        }
        try:
            await self._container(TRANSFERS).execute_item_batch(
                batch_operations=[
                    ("create", (marker,)),
                    ("create", (transfer.to_cosmos(),)),
                ],
                partition_key=transfer.cid,
            )
        except CosmosBatchOperationError:
            # Only a marker that is already there means "pending elsewhere"
            if await self._read(TRANSFERS, marker["id"], transfer.cid) is None:
                raise
            logger.info("Transfer for %s not created: another request is pending", transfer.cid)
            return False

        logger.info("Created transfer %s for %s", transfer.id, transfer.cid)
        return True

    async def compare_and_set_transfer(
        self,
        transfer: TransferRequest,
        expected_status: TransferStatus,
    ) -> bool:
        """Replace a transfer only if its stored status is still ``expected_status``.

        Cosmos DB replaces conditionally on the document etag, so a
        concurrent writer that got there first makes this return False.
        When a pending request is resolved, its pending marker is deleted in
        the same transactional batch.

        Returns:
            True if the write happened, False if the status had moved on
        """
        if self._in_memory:
            # No await between the check and the write, so this is atomic
            # with respect to other coroutines on the loop.
            current = self._mem(TRANSFERS).get(transfer.id)
            if current is None or current.get("status") != expected_status.value:
                return False
            self._mem(TRANSFERS)[transfer.id] = transfer.to_cosmos()
            logger.info("Transfer %s -> %s (in-memory)", transfer.id, transfer.status)
            return True

        from azure.core import MatchConditions
        from azure.cosmos.exceptions import (
            CosmosAccessConditionFailedError,
            CosmosBatchOperationError,
        )

        current = await self._read(TRANSFERS, transfer.id, transfer.cid)
        if current is None or current.get("status") != expected_status.value:
            return False

        marker = None
        if expected_status is TransferStatus.PENDING and transfer.status.is_terminal:
            marker = await self._read(TRANSFERS, _pending_marker_id(transfer.cid), transfer.cid)
            if marker is not None and marker.get("transfer_id") != transfer.id:
                marker = None

        container = self._container(TRANSFERS)
        try:
            if marker is None:
                await container.replace_item(
                    item=transfer.id,
                    body=transfer.to_cosmos(),
                    etag=current["_etag"],
                    match_condition=MatchConditions.IfNotModified,
                )
            else:
                await container.execute_item_batch(
                    batch_operations=[
                        (
                            "replace",
                            (transfer.id, transfer.to_cosmos()),
                            {"if_match_etag": current["_etag"]},
                        ),
                        ("delete", (marker["id"],), {"if_match_etag": marker["_etag"]}),
                    ],
                    partition_key=transfer.cid,
                )
        except CosmosAccessConditionFailedError:
            logger.info("Transfer %s changed concurrently; not updated", transfer.id)
            return False
        except CosmosBatchOperationError:
            stored = await self._read(TRANSFERS, transfer.id, transfer.cid)
            if stored is not None and stored.get("status") == expected_status.value:
                raise
            logger.info("Transfer %s changed concurrently; not updated", transfer.id)
            return False

        logger.info("Transfer %s -> %s", transfer.id, transfer.status)
        return True

    # ------------------------------------------------------------------
    # Promotions and exam results (append-only)
    # ------------------------------------------------------------------

    async def list_promotions(self, cid: int) -> list[PromotionRecord]:
        """List a controller's promotion records, newest first."""
        if self._in_memory:
            records = [
                PromotionRecord.from_cosmos(data)
                for data in self._mem(PROMOTIONS).values()
                if data.get("cid") == cid
            ]
        else:
            items = await self._query(
                PROMOTIONS,
                "SELECT * FROM c WHERE c.cid = @cid",
                [{"name": "@cid", "value": cid}],
            )
            records = [PromotionRecord.from_cosmos(item) for item in items]

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    async def add_promotion(self, record: PromotionRecord) -> PromotionRecord:
        """Append a promotion record."""
        await self._upsert(PROMOTIONS, record.to_cosmos())
        return record

    async def list_exam_results(self, cid: int) -> list[ExamResult]:
        """List a controller's exam results."""
        if self._in_memory:
            return [
                ExamResult.from_cosmos(data)
                for data in self._mem(EXAM_RESULTS).values()
                if data.get("cid") == cid
            ]

        items = await self._query(
            EXAM_RESULTS,
            "SELECT * FROM c WHERE c.cid = @cid",
            [{"name": "@cid", "value": cid}],
        )
        return [ExamResult.from_cosmos(item) for item in items]

    async def add_exam_result(self, result: ExamResult) -> ExamResult:
        """Append an exam result."""
        await self._upsert(EXAM_RESULTS, result.to_cosmos())
        return result
