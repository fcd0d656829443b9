"""Data models for oracle configuration, on-chain state and update outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ORACLE_ID_PATTERN = r"^[a-z0-9_-]{3,50}$"
MAX_INTERVAL_MINUTES = 10080

DEFAULT_PRICE_MULTIPLIER = 10000
DEFAULT_UPDATE_INTERVAL_MINUTES = 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OracleConfig(BaseModel):
    """Locally persisted configuration of a single oracle."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(pattern=ORACLE_ID_PATTERN)
    description: str = Field(default="", max_length=200)
    api_endpoint: str = Field(alias="apiEndpoint")
    data_path: str = Field(alias="dataPath", min_length=1)
    update_interval_minutes: int = Field(
        default=DEFAULT_UPDATE_INTERVAL_MINUTES,
        alias="updateIntervalMinutes",
        ge=1,
        le=MAX_INTERVAL_MINUTES,
    )
    derivation_path: Optional[str] = Field(default=None, alias="derivationPath")
    address: Optional[str] = None
    price_multiplier: int = Field(default=DEFAULT_PRICE_MULTIPLIER, alias="priceMultiplier", ge=1)
    last_update: Optional[datetime] = Field(default=None, alias="lastUpdate")
    next_update: Optional[datetime] = Field(default=None, alias="nextUpdate")
    is_active: bool = Field(default=True, alias="isActive")
    has_error: bool = Field(default=False, alias="hasError")
    error_message: str = Field(default="", alias="errorMessage")
    last_error_at: Optional[datetime] = Field(default=None, alias="lastErrorAt")
    last_tx_hash: Optional[str] = Field(default=None, alias="lastTxHash")
    last_value: Optional[int] = Field(default=None, alias="lastValue")

    @field_validator("api_endpoint")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("API endpoint must start with http:// or https://")
        return value

    @field_validator("last_update", "next_update", "last_error_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def signing_path(self) -> str:
        return self.derivation_path or self.id

    def compute_next_update(self, now: Optional[datetime] = None) -> datetime:
        """``lastUpdate + interval``, or ``now`` for an oracle that never updated."""
        if self.last_update is None:
            return now or utcnow()
        return self.last_update + timedelta(minutes=self.update_interval_minutes)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now >= self.compute_next_update(now)

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the camelCase JSON object stored on disk."""
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class OnChainOracle:
    """Snapshot of ``getOracle`` from the oracle contract."""
    oracle_id: str
    value: int
    last_update_block: int
    creator: str
    has_error: bool
    description: str


@dataclass
class OracleWallet:
    oracle_id: str
    address: str
    public_key: Optional[str]
    derivation_path: str


class UpdateStatus(Enum):
    UPDATED = "updated"
    SKIPPED = "skipped"


class SkipReason(Enum):
    UNCHANGED = "unchanged"
    ALREADY_UPDATING = "already_updating"


@dataclass
class UpdateResult:
    """Outcome of one ``OracleUpdateExecutor.execute`` call that did not raise."""
    oracle_id: str
    status: UpdateStatus
    old_value: Optional[int] = None
    new_value: Optional[int] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    skip_reason: Optional[SkipReason] = None

    @classmethod
    def skipped(cls, oracle_id: str, reason: SkipReason, old_value: Optional[int] = None,
                new_value: Optional[int] = None) -> "UpdateResult":
        return cls(oracle_id, UpdateStatus.SKIPPED, old_value=old_value, new_value=new_value,
                   skip_reason=reason)

    @property
    def is_skipped(self) -> bool:
        return self.status is UpdateStatus.SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "oracleId": self.oracle_id,
            "status": self.status.value,
            "oldValue": self.old_value,
            "newValue": self.new_value,
        }
        if self.status is UpdateStatus.UPDATED:
            payload["change"] = (self.new_value or 0) - (self.old_value or 0)
            payload["txHash"] = self.tx_hash
            payload["blockNumber"] = self.block_number
        else:
            payload["skipped"] = True
            payload["reason"] = self.skip_reason.value if self.skip_reason else None
        return payload
