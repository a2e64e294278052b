# micropay/api/models/swap.py
from pydantic import AliasChoices, BaseModel, Field
from typing import Dict, List, Optional, Any


class SwapCreateRequest(BaseModel):
    """
    Request model for starting a BTC -> content purchase.

    ``userStarknetAddress`` is accepted as an alias of ``userAddress`` for
    older front ends.
    """
    userAddress: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("userAddress", "userStarknetAddress"),
        description="Starknet account that receives the content entitlement.",
        examples=["0x0123abc"],
    )
    contentId: str = Field(..., min_length=1, description="Identifier of the content item.", examples=["1"])


class SwapCreateResponse(BaseModel):
    """Where and how much BTC the user must send."""
    depositAddress: str = Field(..., description="Bitcoin address to pay.")
    amount: str = Field(..., description="Amount of BTC to send.")
    swapId: str = Field(..., description="Swap identifier to track the payment.")


class SwapRecordResponse(BaseModel):
    """Current state of a tracked swap."""
    swapId: str
    userAddress: str
    contentId: str
    status: str
    creatorAddress: Optional[str] = None
    stage: str
    protocol: Optional[str] = None
    purchaseTxHash: Optional[str] = None
    voucherId: Optional[str] = None
    unlockTxHash: Optional[str] = None
    failureReason: Optional[str] = None
    createdAt: str
    updatedAt: Optional[str] = None


class SwapListResponse(BaseModel):
    swaps: List[SwapRecordResponse]
    total_count: int


class OracleStatusResponse(BaseModel):
    """Store counts and audit statistics for operators."""
    protocol: str
    swaps_by_status: Dict[str, int]
    audit: Dict[str, Any]


class ErrorResponse(BaseModel):
    error: str
    details: Optional[str] = None
