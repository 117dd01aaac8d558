"""
Base Repository

Abstract base class for repository pattern implementation.
Provides common CRUD operations plus model <-> document conversion.

Storage conventions:
- `_id` is an ObjectId; references to other documents are stored as strings
- Decimal amounts are stored as strings (no float rounding)
- Enums are stored by value
"""

from abc import ABC
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from custody.config.database import get_database
from custody.shared.models import DomainModel, to_storable

ModelT = TypeVar("ModelT", bound=DomainModel)


class BaseRepository(ABC, Generic[ModelT]):
    """
    Abstract base repository class.

    Subclasses set `model` and call super().__init__ with their collection name.
    """

    model: Type[ModelT]

    def __init__(self, collection_name: str, db: Optional[AsyncIOMotorDatabase] = None):
        """
        Initialize repository.

        Args:
            collection_name: Name of the collection
            db: Database to use (defaults to the connected application database)
        """
        self.collection_name = collection_name
        self._db = db

    def _get_collection(self):
        db = self._db if self._db is not None else get_database()
        return db[self.collection_name]

    # ==================== CONVERSION ====================

    def _to_document(self, entity: ModelT) -> Dict[str, Any]:
        """Model → MongoDB document"""
        data = entity.model_dump(by_alias=True)
        if data.get("_id"):
            data["_id"] = ObjectId(data["_id"])
        else:
            data.pop("_id", None)
        return to_storable(data)

    def _to_model(self, document: Dict[str, Any]) -> ModelT:
        """MongoDB document → Model"""
        return self.model.model_validate(document)

    # ==================== CRUD ====================

    async def find_one(self, filter: Dict[str, Any]) -> Optional[ModelT]:
        document = await self._get_collection().find_one(filter)
        return self._to_model(document) if document else None

    async def find(
        self,
        filter: Dict[str, Any],
        skip: int = 0,
        limit: int = 0,
        sort: Optional[List[tuple]] = None
    ) -> List[ModelT]:
        """
        Find multiple documents.

        Args:
            filter: MongoDB filter dictionary
            skip: Number of documents to skip
            limit: Maximum number of documents to return (0 = no limit)
            sort: List of (field, direction) tuples for sorting
        """
        cursor = self._get_collection().find(filter)

        if sort:
            cursor = cursor.sort(sort)

        if skip > 0:
            cursor = cursor.skip(skip)

        if limit > 0:
            cursor = cursor.limit(limit)

        documents = await cursor.to_list(length=limit if limit > 0 else None)
        return [self._to_model(document) for document in documents]

    async def count_documents(self, filter: Dict[str, Any]) -> int:
        return await self._get_collection().count_documents(filter)

    async def update_one(self, filter: Dict[str, Any], update: Dict[str, Any]) -> bool:
        result = await self._get_collection().update_one(filter, update)
        return result.modified_count > 0

    async def delete_one(self, filter: Dict[str, Any]) -> bool:
        result = await self._get_collection().delete_one(filter)
        return result.deleted_count > 0

    async def find_by_id(self, document_id: str) -> Optional[ModelT]:
        """
        Find document by ID.

        Returns None for ids that aren't valid ObjectIds.
        """
        try:
            object_id = ObjectId(document_id)
        except (InvalidId, TypeError):
            return None
        return await self.find_one({"_id": object_id})

    async def save(self, entity: ModelT) -> ModelT:
        """
        Save entity (insert or full replace).

        Returns:
            The entity with its id set
        """
        data = self._to_document(entity)

        if entity.id:
            await self._get_collection().replace_one({"_id": data["_id"]}, data, upsert=True)
        else:
            result = await self._get_collection().insert_one(data)
            entity.id = str(result.inserted_id)

        return entity
