from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


DEFAULT_DB_NAME = "compliance"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    businesses: Collection
    users: Collection
    shifts: Collection
    agent_configurations: Collection
    staff_certifications: Collection
    compliance_rules: Collection
    compliance_alerts: Collection


class MongoManager:
    """
    MongoDB connection manager.

    Maintains one MongoClient for the app's storage DB. The client is created
    tz_aware so every datetime read back is UTC-aware and comparable with utc_now().
    """

    def __init__(self, mongo_uri: str, db_name: str = DEFAULT_DB_NAME):
        self._mongo_uri = mongo_uri
        self._db_name = db_name
        self._client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect_app(self) -> None:
        """Initialize the Mongo client if needed."""
        with self._lock:
            if self._client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling.
            self._client = MongoClient(self._mongo_uri, connect=True, tz_aware=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity (startup + health endpoint)."""
        try:
            if self._client is None:
                self.connect_app()
            assert self._client is not None
            self._client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the Mongo client."""
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except Exception:
                    logger.exception("Error closing MongoClient")
                self._client = None

    def app_db(self) -> Database:
        """Return the compliance database handle."""
        if self._client is None:
            self.connect_app()
        assert self._client is not None
        return self._client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.app_db()
        return MongoCollections(
            businesses=db["businesses"],
            users=db["users"],
            shifts=db["shifts"],
            agent_configurations=db["agent_configurations"],
            staff_certifications=db["staff_certifications"],
            compliance_rules=db["compliance_rules"],
            compliance_alerts=db["compliance_alerts"],
        )

    def init_indexes(self) -> None:
        """
        Create required indexes (idempotent).

        The partial unique index on compliance_alerts.dedupKey (isOpen == true) is what
        guarantees at most one open alert per deduplication key, even across racing writers.
        """
        cols = self.collections()

        # ---- Users / shifts ----
        cols.users.create_index([("businessId", ASCENDING), ("isDeleted", ASCENDING)], name="idx_users_business")
        cols.shifts.create_index(
            [("businessId", ASCENDING), ("userId", ASCENDING), ("startTime", ASCENDING)],
            name="idx_shifts_business_user_start",
        )

        # ---- Agent configurations ----
        cols.agent_configurations.create_index(
            [("businessId", ASCENDING), ("agentType", ASCENDING)],
            unique=True,
            name="uniq_agent_config_business_type",
        )
        cols.agent_configurations.create_index(
            [("agentType", ASCENDING), ("isEnabled", ASCENDING)], name="idx_agent_config_enabled"
        )

        # ---- Certifications ----
        cols.staff_certifications.create_index(
            [("businessId", ASCENDING), ("status", ASCENDING), ("isDeleted", ASCENDING)],
            name="idx_certs_business_status",
        )
        cols.staff_certifications.create_index(
            [("userId", ASCENDING), ("businessId", ASCENDING), ("name", ASCENDING)], name="idx_certs_user_name"
        )
        cols.staff_certifications.create_index([("expiryDate", ASCENDING)], name="idx_certs_expiry")

        # ---- Rules ----
        cols.compliance_rules.create_index(
            [("businessId", ASCENDING), ("isActive", ASCENDING), ("isDeleted", ASCENDING)],
            name="idx_rules_business_active",
        )
        cols.compliance_rules.create_index([("type", ASCENDING)], name="idx_rules_type")

        # ---- Alerts ----
        cols.compliance_alerts.create_index(
            [("dedupKey", ASCENDING)],
            unique=True,
            partialFilterExpression={"isOpen": True},
            name="uniq_alerts_open_dedup_key",
        )
        cols.compliance_alerts.create_index(
            [("businessId", ASCENDING), ("status", ASCENDING), ("severityRank", DESCENDING), ("createdAt", DESCENDING)],
            name="idx_alerts_business_status_rank",
        )
        cols.compliance_alerts.create_index([("userId", ASCENDING)], name="idx_alerts_user")
        cols.compliance_alerts.create_index([("type", ASCENDING)], name="idx_alerts_type")
        cols.compliance_alerts.create_index([("dueDate", ASCENDING)], name="idx_alerts_due")
