"""
Audit repository - append-only audit_log collection
"""

from typing import Optional, List, Dict, Any
import logging

from dedup_service.core.database import BaseRepository, DatabaseManager
from dedup_service.core.ports import AuditStore
from ..models.audit import AuditEntry

logger = logging.getLogger(__name__)


class AuditRepository(BaseRepository, AuditStore):
    """Insert and read only; nothing in this class updates or deletes"""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__(db_manager, "audit_log")

    async def append(self, entry: AuditEntry, session: Any = None) -> None:
        doc = entry.model_dump(exclude={"entry_id"})
        doc["_id"] = entry.entry_id
        doc["operation"] = entry.operation.value
        await self.insert_one(doc, session=session)

    async def find(
        self,
        subject_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditEntry]:
        query: Dict[str, Any] = {}
        if subject_id:
            query["subject_ids"] = subject_id
        if operation:
            query["operation"] = operation

        docs = await self.find_many(query, sort=[("timestamp", -1)], limit=limit)
        entries = []
        for doc in docs:
            doc["entry_id"] = str(doc.pop("_id"))
            entries.append(AuditEntry(**doc))
        return entries
