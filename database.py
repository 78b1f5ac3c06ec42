"""
MongoDB storage for CourseHub.

A single ``StorageContext`` owns the client and the collection handles. It is
built once when the app starts and closed at shutdown; everything else gets it
passed in. The stores below are thin wrappers over one collection each.

Seat arithmetic on a course happens only in ``CourseStore.conditional_decrement_seats``
and ``CourseStore.increment_seats``. Both are single ``update_one`` calls so the
server evaluates the filter and applies the ``$inc`` as one step.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import InvalidInput
from schemas import Enrollment

logger = logging.getLogger(__name__)

# {"status": None} matches both a null and a missing status.
VISIBLE_STATUS_FILTER = {"$or": [{"status": "approved"}, {"status": None}]}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_object_id(value: str, label: str = "ID") -> ObjectId:
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise InvalidInput(f"Invalid {label}")
    return ObjectId(value)


def canonical_id(value: str, label: str = "ID") -> str:
    """Hex ids are case-insensitive; stored references always use the lower-case form."""
    return str(parse_object_id(value, label))


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Turn a raw document into something JSON can carry (``_id`` -> ``id``)."""
    if doc is None:
        return None
    out = {k: v for k, v in doc.items() if k != "_id"}
    if "_id" in doc:
        out["id"] = str(doc["_id"])
    return out


class UserStore:
    def __init__(self, collection):
        self.collection = collection

    def find_by_email(self, email: str) -> Optional[dict]:
        return self.collection.find_one({"email": email})

    def upsert(self, email: str, fields: Dict[str, Any]) -> bool:
        """Write profile fields; role is only set when the record is created.

        Returns True when a new user record was inserted.
        """
        result = self.collection.update_one(
            {"email": email},
            {
                "$set": {**fields, "updated_at": now_utc()},
                "$setOnInsert": {"email": email, "role": "student", "created_at": now_utc()},
            },
            upsert=True,
        )
        return result.upserted_id is not None

    def set_role(self, email: str, role: str) -> bool:
        result = self.collection.update_one({"email": email}, {"$set": {"role": role, "updated_at": now_utc()}})
        return result.matched_count > 0

    def list_all(self) -> List[dict]:
        return list(self.collection.find({}, {"password": 0}))


class CourseStore:
    def __init__(self, collection):
        self.collection = collection

    def find_by_id(self, course_id: ObjectId) -> Optional[dict]:
        return self.collection.find_one({"_id": course_id})

    def insert(self, course: BaseModel) -> str:
        doc = course.model_dump()
        doc["created_at"] = doc["updated_at"] = now_utc()
        result = self.collection.insert_one(doc)
        return str(result.inserted_id)

    def conditional_decrement_seats(self, course_id: ObjectId) -> bool:
        """Claim one seat if, and only if, one is left at write time."""
        result = self.collection.update_one(
            {"_id": course_id, "seats": {"$gt": 0}},
            {"$inc": {"seats": -1, "enrollment_count": 1}},
        )
        return result.modified_count == 1

    def increment_seats(self, course_id: ObjectId, delta: int = 1) -> bool:
        """Give ``delta`` seats back. False when the course no longer exists."""
        result = self.collection.update_one(
            {"_id": course_id},
            {"$inc": {"seats": delta, "enrollment_count": -delta}},
        )
        return result.matched_count > 0

    def update_fields(self, course_id: ObjectId, fields: Dict[str, Any]) -> bool:
        # Callers must not pass seats or enrollment_count.
        result = self.collection.update_one({"_id": course_id}, {"$set": {**fields, "updated_at": now_utc()}})
        return result.matched_count > 0

    def update_status(self, course_id: ObjectId, status: str) -> bool:
        result = self.collection.update_one({"_id": course_id}, {"$set": {"status": status}})
        return result.matched_count > 0

    def delete(self, course_id: ObjectId) -> bool:
        return self.collection.delete_one({"_id": course_id}).deleted_count > 0

    def find(self, query: Dict[str, Any]) -> List[dict]:
        return list(self.collection.find(query).sort("created_at", DESCENDING))

    def popular(self, limit: int = 6) -> List[dict]:
        cursor = self.collection.find(
            VISIBLE_STATUS_FILTER,
            {"course_title": 1, "image": 1, "enrollment_count": 1},
        ).sort("enrollment_count", DESCENDING).limit(limit)
        return list(cursor)


class EnrollmentStore:
    def __init__(self, collection):
        self.collection = collection

    def find_one(self, user_email: str, course_id: str) -> Optional[dict]:
        return self.collection.find_one({"user_email": user_email, "course_id": course_id})

    def count_by_user(self, user_email: str) -> int:
        return self.collection.count_documents({"user_email": user_email})

    def insert(self, user_email: str, course_id: str, course_title: str) -> ObjectId:
        enrollment = Enrollment(user_email=user_email, course_id=course_id, course_title=course_title, enrolled_at=now_utc())
        result = self.collection.insert_one(enrollment.model_dump())
        return result.inserted_id

    def delete(self, user_email: str, course_id: str) -> int:
        return self.collection.delete_one({"user_email": user_email, "course_id": course_id}).deleted_count

    def delete_by_id(self, enrollment_id: ObjectId) -> int:
        return self.collection.delete_one({"_id": enrollment_id}).deleted_count

    def delete_all_for_course(self, course_id: str) -> int:
        return self.collection.delete_many({"course_id": course_id}).deleted_count

    def list_for_user(self, user_email: str) -> List[dict]:
        cursor = self.collection.find(
            {"user_email": user_email},
            {"course_id": 1, "course_title": 1, "enrolled_at": 1},
        ).sort("enrolled_at", DESCENDING)
        return list(cursor)

    def list_for_course(self, course_id: str) -> List[dict]:
        cursor = self.collection.find(
            {"course_id": course_id},
            {"_id": 0, "user_email": 1, "enrolled_at": 1},
        ).sort("enrolled_at", DESCENDING)
        return list(cursor)


class ReviewStore:
    def __init__(self, collection):
        self.collection = collection

    def find_one(self, user_email: str, course_id: str) -> Optional[dict]:
        return self.collection.find_one({"user_email": user_email, "course_id": course_id})

    def list_for_course(self, course_id: str) -> List[dict]:
        return list(self.collection.find({"course_id": course_id}).sort("created_at", DESCENDING))

    def delete_all_for_course(self, course_id: str) -> int:
        return self.collection.delete_many({"course_id": course_id}).deleted_count

    def rating_summary(self, course_id: str) -> Dict[str, Any]:
        pipeline = [
            {"$match": {"course_id": course_id}},
            {"$group": {"_id": None, "avg_rating": {"$avg": "$rating"}, "count": {"$sum": 1}}},
        ]
        rows = list(self.collection.aggregate(pipeline))
        if not rows:
            return {"average_rating": 0, "review_count": 0}
        return {"average_rating": rows[0]["avg_rating"] or 0, "review_count": rows[0]["count"]}


class StorageContext:
    """Process-wide handle on the database and its stores."""

    def __init__(self, client: MongoClient, database_name: str):
        self.client = client
        self.db = client[database_name]
        self.users = UserStore(self.db["user"])
        self.courses = CourseStore(self.db["course"])
        self.enrollments = EnrollmentStore(self.db["enrollment"])
        self.reviews = ReviewStore(self.db["review"])

    @classmethod
    def from_settings(cls, settings) -> "StorageContext":
        client = MongoClient(
            settings.database_url,
            serverSelectionTimeoutMS=settings.mongo_timeout_ms,
            connectTimeoutMS=settings.mongo_timeout_ms,
            socketTimeoutMS=settings.mongo_timeout_ms,
        )
        return cls(client, settings.database_name)

    @property
    def name(self) -> str:
        return self.db.name

    def ensure_indexes(self) -> None:
        self.db["user"].create_index([("email", ASCENDING)], unique=True)
        self.db["enrollment"].create_index(
            [("user_email", ASCENDING), ("course_id", ASCENDING)], unique=True
        )
        self.db["review"].create_index([("course_id", ASCENDING), ("created_at", DESCENDING)])
        logger.info("Indexes ensured on database %s", self.name)

    def ping(self) -> bool:
        self.client.admin.command("ping")
        return True

    def close(self) -> None:
        self.client.close()
        logger.info("MongoDB client closed")

    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        if isinstance(data, BaseModel):
            data_dict = data.model_dump()
        else:
            data_dict = data.copy()
        data_dict["created_at"] = now_utc()
        data_dict["updated_at"] = now_utc()
        result = self.db[collection_name].insert_one(data_dict)
        return str(result.inserted_id)
