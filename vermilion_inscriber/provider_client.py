"""HTTP client for a mempool.space / esplora style block-chain data provider.

The client is deliberately thin: each helper maps to one REST endpoint and
returns parsed data. It supplies fee rates, spendable outputs and previous
transactions to the inscription flow and forwards signed transactions to the
network. Connection details come from :func:`~vermilion_inscriber.config.load_provider_config`.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import requests
from requests import RequestException, Response

from .config import ConfigurationError, ProviderConfig, load_provider_config
from .network import NetworkParams, get_network
from .tx_builder import UTXO

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Raised when the provider rejects a request (typically a transaction)."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Provider error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class ProviderTransportError(RuntimeError):
    """Raised when the provider is unreachable or returns malformed data."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def format_provider_hint(error: ProviderError | ProviderTransportError | None) -> str | None:
    """Return a human-friendly hint for common provider failures."""

    if error is None:
        return None

    status = getattr(error, "status_code", None)
    message = str(getattr(error, "message", error)).lower()

    if "min relay fee not met" in message or "insufficient fee" in message:
        return (
            "The network rejected the transaction because its fee is too low. "
            "Retry with a higher --fee-rate."
        )
    if "missingorspent" in message or "missing inputs" in message:
        return (
            "One of the inputs is already spent or not yet known to the provider. Refresh the wallet's "
            "outputs and rebuild the inscription."
        )
    if "dust" in message:
        return "An output is below the dust threshold. Increase --postage or fund more value."
    if status == 429:
        return "The provider is rate limiting requests. Wait a moment and retry."
    if isinstance(error, ProviderTransportError) and status is None:
        return (
            "Could not reach the provider. Check your connection and VERMILION_API_URL "
            "(or the provider.endpoint entry in ~/.vermilion.yaml)."
        )
    return None


def _outpoint_key(outpoint: Any) -> Tuple[str, int]:
    if isinstance(outpoint, str):
        txid, _, vout = outpoint.partition(":")
        return txid.lower(), int(vout)
    txid, vout = outpoint
    return str(txid).lower(), int(vout)


def filter_cardinal_utxos(
    utxos: Iterable[UTXO],
    *,
    min_value: int = 1000,
    exclude: Iterable[Any] = (),
) -> List[UTXO]:
    """Keep confirmed outputs worth more than ``min_value`` that are not in ``exclude``.

    ``exclude`` holds outpoints already carrying inscriptions, as ``"txid:vout"``
    strings or ``(txid, vout)`` pairs.
    """

    excluded = {_outpoint_key(item) for item in exclude}
    kept = [
        utxo
        for utxo in utxos
        if utxo.confirmed and utxo.value > min_value and (utxo.txid.lower(), utxo.vout) not in excluded
    ]
    logger.debug("Kept %d of the candidate outputs as cardinal", len(kept))
    return kept


class MempoolClient:
    """REST client for mempool.space compatible APIs."""

    def __init__(
        self,
        config: ProviderConfig,
        params: NetworkParams | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.params = params or get_network(config.network)
        base_url = config.endpoint or self.params.api_base_url
        if not base_url:
            raise ConfigurationError(
                f"No provider endpoint configured for {self.params.name}; set VERMILION_API_URL "
                "or provider.endpoint in ~/.vermilion.yaml"
            )
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()

    @classmethod
    def from_env(cls) -> "MempoolClient":
        """Instantiate a client using environment variables or the config file."""

        return cls(load_provider_config())

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        data: str | None = None,
        expect_json: bool = True,
    ) -> Any:
        url = f"{self._base_url}{path}"
        logger.debug("Provider %s %s", method, url)
        try:
            response = self._session.request(
                method,
                url,
                json=json_body,
                data=data,
                timeout=self.config.timeout,
            )
        except RequestException as exc:
            logger.error(
                "Provider connection failed: %s",
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise ProviderTransportError(
                f"Provider connection to {self._base_url} failed. Check your network and VERMILION_API_URL."
            ) from exc

        self._raise_for_status(response)

        if not expect_json:
            return response.text.strip()
        try:
            return response.json()
        except ValueError as exc:
            logger.debug("Provider JSON parse error: %s", response.text, exc_info=True)
            raise ProviderTransportError("Provider returned malformed JSON") from exc

    def _raise_for_status(self, response: Response) -> None:
        if response.ok:
            return
        body = response.text.strip()
        logger.error("Provider HTTP error %s from %s: %s", response.status_code, response.url, body)
        if 400 <= response.status_code < 500 and response.status_code != 429:
            raise ProviderError(response.status_code, body or response.reason or "rejected")
        raise ProviderTransportError(
            f"Provider returned HTTP {response.status_code}",
            status_code=response.status_code,
        )

    def get_fee_rate(self, tier: str | None = None) -> float:
        """Return the recommended fee rate (sat/vB) for ``tier``."""

        tier = tier or self.config.fee_tier
        fees = self._request("GET", "/v1/fees/recommended")
        try:
            return float(fees[tier])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderTransportError(f"Fee recommendation is missing the '{tier}' tier") from exc

    def list_confirmed_spendable_outputs(self, address: str) -> List[UTXO]:
        """Return the confirmed outputs paying ``address``."""

        entries = self._request("GET", f"/address/{address}/utxo")
        utxos: List[UTXO] = []
        for entry in entries or []:
            confirmed = bool((entry.get("status") or {}).get("confirmed"))
            if not confirmed:
                continue
            utxos.append(
                UTXO(
                    txid=entry["txid"],
                    vout=int(entry["vout"]),
                    value=int(entry["value"]),
                    confirmed=True,
                )
            )
        logger.info("Provider listed %d confirmed outputs for %s", len(utxos), address)
        return utxos

    def get_raw_previous_transaction(self, txid: str) -> str:
        """Return the raw hex of transaction ``txid``."""

        return self._request("GET", f"/tx/{txid}/hex", expect_json=False)

    def broadcast(self, tx_hex: str) -> str:
        """Submit one signed transaction and return its txid."""

        txid = self._request("POST", "/tx", data=tx_hex, expect_json=False)
        logger.info("Broadcast transaction %s", txid)
        return txid

    def submit_package(self, tx_hexes: Sequence[str]) -> Optional[dict[str, Any]]:
        """Submit dependent transactions together (parents first)."""

        result = self._request("POST", "/v1/txs/package", json_body=list(tx_hexes))
        logger.info("Submitted package of %d transactions", len(tx_hexes))
        return result
