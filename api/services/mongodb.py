# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
MongoDB access layer.

Documents are stored with camelCase keys, every write stamps who made it
and when, and deletion is a ``deletedAt`` marker that reads skip unless
asked not to. Ids travel through the application as strings.
"""

import os
import re
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Dict, Optional, Any, Iterator, Tuple
from pymongo import MongoClient, ASCENDING, DESCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from bson import ObjectId
from bson.errors import InvalidId

from models.base import utcnow

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r'(?<!^)(?=[A-Z])')

LIVE = {"deletedAt": None}

# (collection, keys, options)
INDEXES: List[Tuple[str, Any, Dict[str, Any]]] = [
    ("institutions", "email", {"unique": True, "sparse": True}),
    ("institutions", "deletedAt", {}),
    ("users", "email", {"unique": True}),
    ("users", "institutionId", {}),
    ("families", "cpf", {"unique": True, "partialFilterExpression": {"cpf": {"$type": "string"}}}),
    ("families", [("isBlocked", ASCENDING), ("blockedUntil", ASCENDING)], {}),
    ("families", "name", {}),
    # One institution per family
    ("institution_families", "familyId", {"unique": True}),
    ("institution_families", "institutionId", {}),
    ("deliveries", [("institutionId", ASCENDING), ("deliveryDate", DESCENDING)], {}),
    ("deliveries", [("familyId", ASCENDING), ("deliveryDate", DESCENDING)], {}),
    ("deliveries", "deliveryDate", {}),
    ("products", "name", {"unique": True, "partialFilterExpression": {"isActive": True}}),
    ("suppliers", "name", {}),
    ("stock_movements", [("institutionId", ASCENDING), ("movementDate", DESCENDING)], {}),
    ("stock_movements", "supplierId", {}),
    ("stock_movements", "deliveryId", {}),
    ("inventory", [("institutionId", ASCENDING), ("productId", ASCENDING)], {"unique": True}),
    ("receipts", [("institutionId", ASCENDING), ("generatedAt", DESCENDING)], {}),
    ("receipts", "referenceId", {}),
    ("audit_logs", [("timestamp", DESCENDING)], {}),
    ("audit_logs", [("entity", ASCENDING), ("entityId", ASCENDING), ("timestamp", DESCENDING)], {}),
    ("audit_logs", "traceId", {}),
]


def snake_to_camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub('_', name).lower()


def to_document(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map a snake_case model dump to a camelCase Mongo document (top level only)."""
    document = {}
    for key, value in data.items():
        if key == "id":
            continue
        if isinstance(value, list):
            value = [to_document(v) if isinstance(v, dict) else v for v in value]
        document[snake_to_camel(key)] = value
    return document


def from_document(document: Dict[str, Any]) -> Dict[str, Any]:
    """Map a camelCase Mongo document to snake_case keys for model parsing."""
    data = {}
    for key, value in document.items():
        if key == "_id":
            data["id"] = str(value)
            continue
        if isinstance(value, list):
            value = [from_document(v) if isinstance(v, dict) else v for v in value]
        data[camel_to_snake(key)] = value
    return data


def parse_object_id(value: Any) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def to_object_ids(ids: List[str]) -> List[ObjectId]:
    """Convert string ids for an $in query, skipping malformed ones."""
    object_ids = []
    for value in ids:
        object_id = parse_object_id(value)
        if object_id is None:
            logger.warning(f"Skipping malformed id: {value}")
        else:
            object_ids.append(object_id)
    return object_ids


def _with_string_id(document: Optional[Dict]) -> Optional[Dict]:
    if document and "_id" in document:
        document["id"] = str(document.pop("_id"))
    return document


def _live(filters: Optional[Dict] = None, include_deleted: bool = False) -> Dict:
    query = {} if include_deleted else dict(LIVE)
    query.update(filters or {})
    return query


def _stamped(fields: Dict, user_id: str, creating: bool = False) -> Dict:
    """Copy of ``fields`` with authorship and time stamps."""
    now = utcnow()
    stamped = dict(fields)
    if creating:
        stamped.setdefault("createdAt", now)
        stamped.setdefault("createdBy", user_id)
        stamped.setdefault("deletedAt", None)
    stamped["updatedAt"] = now
    stamped["updatedBy"] = user_id
    return stamped


class DuplicateDocumentError(ValueError):
    """An insert or update collided with a unique index."""
    pass


@dataclass
class PaginationResult:
    """One page of documents plus the size of the whole result."""

    items: List[Dict]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.page_size) if self.page_size else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


class MongoDBService:
    """
    Collection access with soft-delete aware reads.

    The client is created on first use so importing the application does
    not require a reachable server.
    """

    def __init__(self, connection_string: str = None, database_name: str = None):
        self.connection_string = connection_string or os.getenv(
            'MONGODB_URI', 'mongodb://localhost:27017/cesta_basica_dev'
        )
        self.database_name = database_name or os.getenv('MONGODB_DATABASE', 'cesta_basica_dev')
        self.pool_options = {
            "maxPoolSize": int(os.getenv('MONGODB_MAX_POOL_SIZE', '10')),
            "minPoolSize": int(os.getenv('MONGODB_MIN_POOL_SIZE', '1')),
            "maxIdleTimeMS": int(os.getenv('MONGODB_MAX_IDLE_TIME_MS', '30000')),
            "serverSelectionTimeoutMS": int(os.getenv('MONGODB_SERVER_SELECTION_TIMEOUT_MS', '5000')),
        }
        self._client: Optional[MongoClient] = None

    @property
    def client(self) -> MongoClient:
        if self._client is None:
            client = MongoClient(self.connection_string, retryWrites=True, retryReads=True, **self.pool_options)
            try:
                client.admin.command('ping')
            except PyMongoError as e:
                client.close()
                logger.error(f"MongoDB unreachable: {e}")
                raise
            self._client = client
            logger.info(f"Connected to MongoDB database {self.database_name}")
        return self._client

    @property
    def database(self) -> Database:
        return self.client[self.database_name]

    def get_collection(self, collection_name: str) -> Collection:
        return self.database[collection_name]

    def close_connection(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("MongoDB connection closed")

    def health_check(self) -> Dict[str, Any]:
        try:
            ping = self.client.admin.command('ping')
            version = self.client.server_info().get('version')
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return {'status': 'unhealthy', 'error': str(e), 'database': self.database_name}

        return {
            'status': 'healthy',
            'ping': ping.get('ok') == 1,
            'version': version,
            'database': self.database_name,
            'connection_pool_size': self.pool_options["maxPoolSize"]
        }

    @contextmanager
    def _operation(self, description: str, collection: str) -> Iterator[None]:
        """Log failures of a collection operation and surface unique-index violations."""
        try:
            yield
        except DuplicateKeyError as e:
            logger.warning(f"Unique index violated while trying to {description} in {collection}: {e}")
            raise DuplicateDocumentError(f"A document with the same unique key already exists in {collection}")
        except Exception as e:
            logger.error(f"Could not {description} in {collection}: {e}")
            raise

    # Writes

    def create(self, collection: str, document: Dict, user_id: str, doc_id: Optional[str] = None) -> str:
        """Insert ``document`` and return its id. ``doc_id`` fixes the id in advance."""
        document = _stamped(document, user_id, creating=True)
        if doc_id:
            object_id = parse_object_id(doc_id)
            if object_id is None:
                raise ValueError(f"Invalid ObjectId format: {doc_id}")
            document["_id"] = object_id
        else:
            document.setdefault("_id", ObjectId())

        with self._operation("insert a document", collection):
            inserted_id = self.get_collection(collection).insert_one(document).inserted_id
        logger.debug(f"Inserted {inserted_id} into {collection}")
        return str(inserted_id)

    def update_by_id(self, collection: str, doc_id: str, updates: Dict, user_id: str) -> bool:
        """``$set`` fields on a live document. Returns True when a document matched."""
        object_id = parse_object_id(doc_id)
        if object_id is None:
            logger.warning(f"Not updating {collection}: malformed id {doc_id}")
            return False

        with self._operation(f"update {doc_id}", collection):
            result = self.get_collection(collection).update_one(
                _live({"_id": object_id}), {"$set": _stamped(updates, user_id)}
            )
        if not result.matched_count:
            logger.warning(f"No live document {doc_id} in {collection} to update")
        return result.matched_count > 0

    def update_one(self, collection: str, filters: Dict, update: Dict, upsert: bool = False) -> Optional[Dict]:
        """
        Apply a raw update operator document to the first match.

        Returns the document after the update, or None when nothing matched
        and ``upsert`` is off. The filter is used as given, which lets callers
        guard counters such as inventory balances.
        """
        with self._operation("apply an update", collection):
            document = self.get_collection(collection).find_one_and_update(
                filters, update, upsert=upsert, return_document=ReturnDocument.AFTER
            )
        return _with_string_id(document)

    def soft_delete_by_id(self, collection: str, doc_id: str, user_id: str) -> bool:
        object_id = parse_object_id(doc_id)
        if object_id is None:
            return False

        stamp = _stamped({}, user_id)
        stamp["deletedAt"] = stamp["updatedAt"]
        with self._operation(f"soft delete {doc_id}", collection):
            result = self.get_collection(collection).update_one(_live({"_id": object_id}), {"$set": stamp})
        if result.modified_count:
            logger.info(f"Soft deleted {doc_id} in {collection}")
        return result.modified_count > 0

    def hard_delete_by_id(self, collection: str, doc_id: str) -> bool:
        """Remove the document for good. Used to compensate partially applied writes."""
        object_id = parse_object_id(doc_id)
        if object_id is None:
            return False

        with self._operation(f"delete {doc_id}", collection):
            result = self.get_collection(collection).delete_one({"_id": object_id})
        if result.deleted_count:
            logger.warning(f"Hard deleted {doc_id} in {collection}")
        return result.deleted_count > 0

    def delete_many(self, collection: str, filters: Dict) -> int:
        with self._operation("delete documents", collection):
            deleted = self.get_collection(collection).delete_many(filters).deleted_count
        logger.info(f"Deleted {deleted} documents from {collection}")
        return deleted

    # Reads

    def find(self, collection: str, filters: Dict = None, include_deleted: bool = False,
             sort_by: Optional[str] = None, sort_order: int = ASCENDING,
             limit: Optional[int] = None, projection: Optional[Dict] = None) -> List[Dict]:
        with self._operation("find documents", collection):
            cursor = self.get_collection(collection).find(_live(filters, include_deleted), projection)
            if sort_by:
                cursor = cursor.sort(sort_by, sort_order)
            if limit:
                cursor = cursor.limit(limit)
            return [_with_string_id(doc) for doc in cursor]

    def find_one(self, collection: str, filters: Dict, include_deleted: bool = False) -> Optional[Dict]:
        with self._operation("find a document", collection):
            document = self.get_collection(collection).find_one(_live(filters, include_deleted))
        return _with_string_id(document)

    def find_by_id(self, collection: str, doc_id: str, include_deleted: bool = False) -> Optional[Dict]:
        """Document by id. A malformed id finds nothing."""
        object_id = parse_object_id(doc_id)
        if object_id is None:
            logger.debug(f"Malformed id {doc_id} looked up in {collection}")
            return None
        return self.find_one(collection, {"_id": object_id}, include_deleted)

    def paginate(self, collection: str, page: int = 1, page_size: int = 20,
                 filters: Dict = None, sort_by: str = "createdAt", sort_order: int = DESCENDING,
                 include_deleted: bool = False) -> PaginationResult:
        query = _live(filters, include_deleted)
        with self._operation(f"read page {page}", collection):
            target = self.get_collection(collection)
            total = target.count_documents(query)
            cursor = target.find(query).sort(sort_by, sort_order).skip((page - 1) * page_size).limit(page_size)
            items = [_with_string_id(doc) for doc in cursor]
        return PaginationResult(items, total, page, page_size)

    def count(self, collection: str, filters: Dict = None, include_deleted: bool = False) -> int:
        with self._operation("count documents", collection):
            return self.get_collection(collection).count_documents(_live(filters, include_deleted))

    def aggregate(self, collection: str, pipeline: List[Dict]) -> List[Dict]:
        """Run ``pipeline`` over live documents only."""
        with self._operation("aggregate", collection):
            return list(self.get_collection(collection).aggregate([{"$match": dict(LIVE)}, *pipeline]))

    def create_indexes(self) -> None:
        """Create every index in ``INDEXES``. Existing identical indexes are left alone."""
        for collection, keys, options in INDEXES:
            with self._operation(f"create index on {keys}", collection):
                self.get_collection(collection).create_index(keys, **options)
        logger.info(f"Ensured {len(INDEXES)} indexes")


_mongodb_service: Optional[MongoDBService] = None


def get_mongodb_service() -> MongoDBService:
    """Process-wide service for scripts running outside the Flask app."""
    global _mongodb_service
    if _mongodb_service is None:
        _mongodb_service = MongoDBService()
    return _mongodb_service


def close_mongodb_connection() -> None:
    global _mongodb_service
    if _mongodb_service is not None:
        _mongodb_service.close_connection()
        _mongodb_service = None
