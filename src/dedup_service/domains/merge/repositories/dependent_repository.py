"""
Dependent record repositories - appointments, documents, prescriptions, bills, policies
"""

from typing import List, Any, Dict
import logging

from dedup_service.core.database import BaseRepository, DatabaseManager
from dedup_service.core.ports import DependentRecordStore

logger = logging.getLogger(__name__)


class DependentRecordRepository(BaseRepository, DependentRecordStore):
    """A collection whose documents reference a patient through ``patient_id``"""

    def __init__(self, db_manager: DatabaseManager, category: str):
        super().__init__(db_manager, category)
        self.category = category

    async def record_ids(self, patient_id: str, session: Any = None) -> List[Any]:
        docs = await self.find_many({"patient_id": patient_id}, projection={"_id": 1}, session=session)
        return [doc["_id"] for doc in docs]

    async def reassign_records(self, record_ids: List[Any], new_patient_id: str, session: Any = None) -> int:
        if not record_ids:
            return 0
        return await self.update_many(
            {"_id": {"$in": list(record_ids)}},
            {"$set": {"patient_id": new_patient_id}},
            session=session
        )


def build_dependent_repositories(db_manager: DatabaseManager) -> List[DependentRecordRepository]:
    """One repository per configured dependent category, in configuration order"""
    categories: Dict[str, str] = db_manager.config.dependent_collections()
    return [DependentRecordRepository(db_manager, category) for category in categories]
