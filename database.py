"""
MongoDB access for the marketplace.

Collection names are fixed here; each one stores the matching model from
schemas.py. Helpers accept the database handle so the API can swap it out.
"""
from datetime import datetime, timezone
from typing import Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from errors import NotFound

LISTINGS = "listing"
PROMOTIONS = "promotion"
ORDERS = "order"

client = MongoClient(DATABASE_URL, tz_aware=True)
db = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def ensure_indexes(database: Database) -> None:
    # one listing per seller and product
    database[LISTINGS].create_index(
        [("product_id", ASCENDING), ("seller_id", ASCENDING)], unique=True
    )
    database[LISTINGS].create_index("seller_id")
    database[PROMOTIONS].create_index("applicable_product_ids")
    database[ORDERS].create_index("buyer_id")
    database[ORDERS].create_index("status")


def parse_object_id(value: str, what: str = "Document") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} {value} not found", field="id")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude={"id"})
    else:
        data_dict = dict(data)
        data_dict.pop("id", None)
    now = datetime.now(timezone.utc)
    if not data_dict.get("created_at"):
        data_dict["created_at"] = now
    if not data_dict.get("updated_at"):
        data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def serialize(doc: dict) -> dict:
    """Expose the Mongo _id as a string id."""
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc
