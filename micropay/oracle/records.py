# micropay/oracle/records.py
"""
Swap record model and its settlement state machine.

A record carries two pieces of state:

- ``status``: the coarse lifecycle seen by the rest of the system
  (PENDING_DEPOSIT -> CONFIRMED | FAILED). Forward-only.
- ``stage``: the fine-grained settlement progress persisted between on-chain
  steps, so a restarted oracle knows whether a purchase or unlock call has
  already been submitted. Forward-only.

Records are persisted with camelCase keys (``swapId``, ``userAddress``, ...).
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class SwapStatus(str, Enum):
    PENDING_DEPOSIT = "PENDING_DEPOSIT"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class SettlementProtocol(str, Enum):
    VOUCHER = "voucher"
    SWAP = "swap"


class SettlementStage(str, Enum):
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_SEEN = "PAYMENT_SEEN"
    PURCHASE_SUBMITTED = "PURCHASE_SUBMITTED"
    PURCHASE_CONFIRMED = "PURCHASE_CONFIRMED"
    UNLOCK_SUBMITTED = "UNLOCK_SUBMITTED"
    SETTLED = "SETTLED"


STAGE_ORDER = list(SettlementStage)


class InvalidTransitionError(ValueError):
    """Raised when a record would move backwards or out of a terminal status."""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SwapRecord(BaseModel):
    """One swap/voucher purchase tracked by the oracle."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    swap_id: str = Field(..., min_length=1, description="Identifier assigned by the swap provider.")
    user_address: str = Field(..., min_length=1, description="Account receiving the content entitlement.")
    content_id: str = Field(..., min_length=1, description="Content item being purchased.")
    status: SwapStatus = SwapStatus.PENDING_DEPOSIT
    creator_address: Optional[str] = Field(None, description="Recipient of proceeds (configured default if unset).")

    stage: SettlementStage = SettlementStage.AWAITING_PAYMENT
    protocol: Optional[SettlementProtocol] = None
    purchase_tx_hash: Optional[str] = None
    voucher_id: Optional[str] = None
    unlock_tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    # Consecutive waits in which the node did not know the submitted transaction
    unknown_tx_polls: int = 0

    created_at: str = Field(default_factory=utc_now)
    updated_at: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        # Records written by the first oracle used userStarknetAddress
        if isinstance(data, dict) and "userStarknetAddress" in data and "userAddress" not in data:
            data = dict(data)
            data["userAddress"] = data.pop("userStarknetAddress")
        return data

    @property
    def is_pending(self) -> bool:
        return self.status is SwapStatus.PENDING_DEPOSIT

    @property
    def settlement_in_flight(self) -> bool:
        """True once any on-chain call may have been submitted for this record."""
        return STAGE_ORDER.index(self.stage) > STAGE_ORDER.index(SettlementStage.PAYMENT_SEEN)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    def advance(self, stage: SettlementStage) -> None:
        """Move the settlement stage forward; re-entering the current stage is a no-op."""
        self._require_pending(f"advance to {stage.value}")
        current = STAGE_ORDER.index(self.stage)
        target = STAGE_ORDER.index(stage)
        if target < current:
            raise InvalidTransitionError(
                f"Swap {self.swap_id}: cannot move stage back from {self.stage.value} to {stage.value}"
            )
        if target != current:
            self.stage = stage
            self.touch()

    def mark_confirmed(self) -> None:
        self._require_pending("confirm")
        self.status = SwapStatus.CONFIRMED
        self.failure_reason = None
        self.touch()

    def mark_failed(self, reason: str) -> None:
        self._require_pending("fail")
        self.status = SwapStatus.FAILED
        self.failure_reason = reason
        self.touch()

    def touch(self) -> None:
        self.updated_at = utc_now()

    def _require_pending(self, action: str) -> None:
        if self.status is not SwapStatus.PENDING_DEPOSIT:
            raise InvalidTransitionError(
                f"Swap {self.swap_id}: cannot {action}, status is already {self.status.value}"
            )
