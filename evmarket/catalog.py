"""
Catalog lookups for vehicles and accessories, stored as Redis hashes.

Listing CRUD lives elsewhere; this module only reads prices and availability,
writes vehicle status on behalf of the payment engine, and seeds listings at startup.
"""
import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from evmarket.exceptions import NotFoundError
from evmarket.models import Accessory, Vehicle, VehicleStatus
from evmarket.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


def _to_hash(record: BaseModel) -> Dict[str, str]:
    return {field: str(value) for field, value in record.model_dump(mode="json").items()}


class CatalogClient:
    """Read access to listings plus vehicle status updates"""

    def __init__(self, redis_client: Optional[RedisClient] = None):
        self.redis = redis_client or get_redis_client()

    @staticmethod
    def vehicle_key(vehicle_id: str) -> str:
        return f"vehicle:{vehicle_id}"

    @staticmethod
    def accessory_key(accessory_id: str) -> str:
        return f"accessory:{accessory_id}"

    def get_vehicle(self, vehicle_id: str, conn: Any = None) -> Vehicle:
        data = (conn or self.redis).hgetall(self.vehicle_key(vehicle_id))
        if not data:
            raise NotFoundError("Vehicle", vehicle_id)
        return Vehicle.model_validate(data)

    def get_accessory(self, accessory_id: str, conn: Any = None) -> Accessory:
        data = (conn or self.redis).hgetall(self.accessory_key(accessory_id))
        if not data:
            raise NotFoundError("Accessory", accessory_id)
        return Accessory.model_validate(data)

    def set_vehicle_status(self, vehicle_id: str, status: VehicleStatus, conn: Any = None) -> None:
        """Write a vehicle status; pass a pipeline in MULTI mode to queue it"""
        (conn or self.redis).hset(self.vehicle_key(vehicle_id), mapping={"status": status.value})

    def save_vehicle(self, vehicle: Vehicle) -> None:
        self.redis.hset(self.vehicle_key(vehicle.id), mapping=_to_hash(vehicle))

    def save_accessory(self, accessory: Accessory) -> None:
        self.redis.hset(self.accessory_key(accessory.id), mapping=_to_hash(accessory))

    def load_seed_file(self, path: str) -> int:
        """
        Load listings from a JSON file of the form
        ``{"vehicles": [{"id", "name", "price", "status"}], "accessories": [...]}``.

        Returns:
            Number of listings written
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        count = 0
        for raw in data.get("vehicles", []):
            self.save_vehicle(Vehicle.model_validate(raw))
            count += 1
        for raw in data.get("accessories", []):
            self.save_accessory(Accessory.model_validate(raw))
            count += 1

        logger.info(f"Loaded {count} catalog listings from {path}")
        return count
