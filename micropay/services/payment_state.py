# micropay/services/payment_state.py
"""
Client for the cross-chain swap provider.

Translates provider swap states into a small normalized set. Any failure to get
an answer (timeout, connection error, non-2xx response, malformed body) raises
PaymentStateUnavailable; FAILED is only ever returned when the provider itself
reports the swap as failed.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote, urljoin

import requests
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SOURCE_CONFIRMED = "SOURCE_CONFIRMED"
    DONE = "DONE"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


# Provider state name -> normalized status
PROVIDER_STATE_MAP: Dict[str, PaymentStatus] = {
    "CREATED": PaymentStatus.PENDING,
    "PENDING": PaymentStatus.PENDING,
    "PR_CREATED": PaymentStatus.PENDING,
    "QUOTE_SOFT_EXPIRED": PaymentStatus.PENDING,
    "BTC_TX_SEEN": PaymentStatus.PENDING,
    "CLAIM_COMMITED": PaymentStatus.PENDING,
    "BTC_TX_CONFIRMED": PaymentStatus.SOURCE_CONFIRMED,
    "SOURCE_CONFIRMED": PaymentStatus.SOURCE_CONFIRMED,
    "PR_PAID": PaymentStatus.SOURCE_CONFIRMED,
    "CLAIM_CLAIMED": PaymentStatus.DONE,
    "DONE": PaymentStatus.DONE,
    "COMPLETED": PaymentStatus.DONE,
    "FAILED": PaymentStatus.FAILED,
    "EXPIRED": PaymentStatus.FAILED,
    "QUOTE_EXPIRED": PaymentStatus.FAILED,
    "REFUNDED": PaymentStatus.FAILED,
}


class PaymentStateUnavailable(Exception):
    """Transient failure to obtain a swap's status; retry on the next tick."""

    def __init__(self, swap_id: str, reason: str):
        super().__init__(f"Status of swap {swap_id} unavailable: {reason}")
        self.swap_id = swap_id
        self.reason = reason


class SwapCreationError(Exception):
    """Raised when the provider refuses or fails to create a swap."""


@dataclass(frozen=True)
class SwapQuote:
    swap_id: str
    deposit_address: str
    amount: str


def normalize_state(state: Optional[str]) -> PaymentStatus:
    if not state:
        return PaymentStatus.UNKNOWN
    return PROVIDER_STATE_MAP.get(str(state).strip().upper(), PaymentStatus.UNKNOWN)


class PaymentStateClient:
    """HTTP client for the swap provider's REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def _swap_url(self, swap_id: str) -> str:
        return urljoin(self.base_url, f"swaps/{quote(swap_id, safe='')}")

    def get_status(self, swap_id: str) -> PaymentStatus:
        """
        Get the normalized settlement status of a swap.

        Args:
            swap_id: Identifier assigned by the provider at creation time

        Returns:
            The normalized PaymentStatus

        Raises:
            PaymentStateUnavailable: If the provider could not be queried
        """
        api_url = self._swap_url(swap_id)
        try:
            response = self.session.get(api_url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except RequestException as e:
            logger.warning(f"Error fetching status of swap {swap_id} ({api_url}): {e}")
            raise PaymentStateUnavailable(swap_id, str(e)) from e
        except ValueError as e:
            # JSON decoding
            logger.warning(f"Swap provider returned a non-JSON body for swap {swap_id}: {e}")
            raise PaymentStateUnavailable(swap_id, "invalid JSON response") from e

        if not isinstance(data, dict) or "state" not in data:
            logger.warning(f"Unexpected status payload for swap {swap_id}: {type(data).__name__}")
            raise PaymentStateUnavailable(swap_id, "response missing 'state'")

        status = normalize_state(data.get("state"))
        if status is PaymentStatus.UNKNOWN:
            logger.warning(f"Swap {swap_id} reported unrecognized state {data.get('state')!r}")
        return status

    def create_swap(
        self,
        recipient: str,
        to_amount: Decimal,
        from_token: str = "BTC",
        to_token: str = "STRK"
    ) -> SwapQuote:
        """
        Create a BTC -> destination-token swap paying out to ``recipient``.

        Returns:
            SwapQuote with the provider swap id, BTC deposit address and amount

        Raises:
            RequestException: If the HTTP request to the provider fails
            SwapCreationError: If the response is malformed or missing expected fields
        """
        api_url = urljoin(self.base_url, "swaps")
        request_body: Dict[str, Any] = {
            "fromToken": from_token,
            "toToken": to_token,
            "toAmount": str(to_amount),
            "recipient": recipient,
        }

        try:
            response = self.session.post(api_url, json=request_body, timeout=self.timeout)
            response.raise_for_status()
            response_json = response.json()
        except RequestException as e:
            logger.error(f"Error creating swap at provider ({api_url}): {e}")
            raise
        except ValueError as e:
            raise SwapCreationError(f"Could not parse swap creation response: {e}") from e

        swap_id = response_json.get("id") if isinstance(response_json, dict) else None
        deposit_address = response_json.get("depositAddress") if swap_id else None
        amount = response_json.get("fromAmount") if swap_id else None
        if not swap_id or not deposit_address or amount is None:
            raise SwapCreationError("Swap provider response missing id, depositAddress or fromAmount")

        logger.info(f"Created swap {swap_id} for recipient {recipient}")
        return SwapQuote(swap_id=str(swap_id), deposit_address=deposit_address, amount=str(amount))
