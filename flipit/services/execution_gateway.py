"""Client for the external Execution Service that signs and submits swaps.

Wraps the service's JSON API for buy/sell commands and owns the retry and
error classification policy. Callers only ever see an ``ExecutionResult``.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass

import httpx

from flipit.config import settings

logger = logging.getLogger(__name__)

TRANSIENT = "transient"
NO_BALANCE = "no_balance"
UNCLASSIFIED = "unclassified"

NO_BALANCE_CODES = {"NO_BALANCE", "BALANCE_CHECK_FAILED"}
NO_BALANCE_MESSAGES = (
    "no token balance",
    "no token accounts found",
    "already been sold",
    "token balance is 0",
)
TRANSIENT_CODES = {
    "INSUFFICIENT_LIQUIDITY",
    "NO_ROUTE",
    "ROUTE_NOT_FOUND",
    "QUOTE_FAILED",
    "SLIPPAGE_EXCEEDED",
    "BLOCKHASH_EXPIRED",
    "RPC_ERROR",
    "TIMEOUT",
}
TRANSIENT_MESSAGES = ("liquidity", "no route", "timed out", "timeout", "blockhash", "rate limit")


@dataclass
class ExecutionResult:
    success: bool
    signature: str | None = None
    error: str | None = None
    error_code: str | None = None
    error_class: str | None = None

    @property
    def no_balance(self) -> bool:
        return self.error_class == NO_BALANCE


def classify_error(code: str | None, message: str | None, status_code: int | None = None) -> str:
    """Map an Execution Service failure onto transient / no_balance / unclassified."""
    code = (code or "").upper()
    text = (message or "").lower()
    if code in NO_BALANCE_CODES or any(m in text for m in NO_BALANCE_MESSAGES):
        return NO_BALANCE
    if code in TRANSIENT_CODES or any(m in text for m in TRANSIENT_MESSAGES):
        return TRANSIENT
    if status_code is not None and (status_code >= 500 or status_code == 429):
        return TRANSIENT
    return UNCLASSIFIED


def first_signature(payload: dict) -> str | None:
    """Pull the transaction signature out of the service's response shapes."""
    if not isinstance(payload, dict):
        return None
    if payload.get("signature"):
        return payload["signature"]
    signatures = payload.get("signatures")
    if isinstance(signatures, list) and signatures:
        return signatures[0]
    data = payload.get("data")
    if isinstance(data, dict):
        return first_signature(data)
    return None


class ExecutionGateway:
    """Submit buy/sell commands to the Execution Service.

    Without a configured service URL the gateway runs in mock mode and
    returns ``mock-<n>`` signatures, mirroring a dry-run deployment.
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        connect_retries: int | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = settings.execution_service_url if url is None else url
        self.api_key = settings.execution_service_key if api_key is None else api_key
        self.timeout = timeout or settings.execution_timeout_seconds
        self.connect_retries = (
            settings.execution_connect_retries if connect_retries is None else connect_retries
        )
        # Every connect attempt plus the request itself; the claim lease is sized above this
        self.deadline = self.timeout * (self.connect_retries + 2)
        self._client = client
        self._mock_mode = not self.url and client is None
        self._mock_counter = itertools.count(1)
        if self._mock_mode:
            logger.warning("Execution service URL not configured; using mock mode")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"content-type": "application/json"}
            if self.api_key:
                headers["authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def buy(
        self,
        token_mint: str,
        amount_usd: float,
        slippage_bps: int | None = None,
        priority_fee_mode: str | None = None,
        wallet_id: str | None = None,
    ) -> ExecutionResult:
        payload = {
            "side": "buy",
            "tokenMint": token_mint,
            "amountUsd": round(amount_usd, 6),
        }
        return await self._submit(payload, slippage_bps, priority_fee_mode, wallet_id)

    async def sell(
        self,
        token_mint: str,
        slippage_bps: int | None = None,
        priority_fee_mode: str | None = None,
        wallet_id: str | None = None,
    ) -> ExecutionResult:
        """Sell the wallet's entire balance of ``token_mint``."""
        payload = {
            "side": "sell",
            "tokenMint": token_mint,
            "sellAll": True,
        }
        return await self._submit(payload, slippage_bps, priority_fee_mode, wallet_id)

    async def _submit(
        self,
        payload: dict,
        slippage_bps: int | None,
        priority_fee_mode: str | None,
        wallet_id: str | None,
    ) -> ExecutionResult:
        payload["slippageBps"] = slippage_bps if slippage_bps is not None else settings.default_slippage_bps
        payload["priorityFeeMode"] = priority_fee_mode or settings.default_priority_fee_mode
        payload["walletId"] = wallet_id or settings.default_wallet_id

        if self._mock_mode:
            sig = f"mock-{next(self._mock_counter)}"
            logger.info(
                f"MOCK {payload['side'].upper()}: mint={payload['tokenMint']}, "
                f"amount={payload.get('amountUsd', 'all')}, slippage={payload['slippageBps']}bps -> {sig}"
            )
            return ExecutionResult(success=True, signature=sig)

        try:
            res = await asyncio.wait_for(self._post(payload), timeout=self.deadline)
        except asyncio.TimeoutError:
            logger.error(f"Execution service gave no answer within {self.deadline:g}s")
            return ExecutionResult(
                success=False, error=f"Timed out after {self.deadline:g}s", error_class=TRANSIENT,
            )
        if isinstance(res, ExecutionResult):
            return res

        try:
            body = res.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        signature = first_signature(body)
        if res.status_code < 400 and signature and not body.get("error"):
            logger.info(f"{payload['side'].capitalize()} submitted for {payload['tokenMint']}: {signature}")
            return ExecutionResult(success=True, signature=signature)

        code = body.get("error_code") or body.get("code")
        message = body.get("error") or body.get("message") or f"HTTP {res.status_code}"
        if not isinstance(message, str):
            message = str(message)
        if res.status_code < 400 and not signature and not body.get("error"):
            message = "Execution service returned no signature"
        error_class = classify_error(code, message, res.status_code)
        logger.warning(
            f"{payload['side'].capitalize()} failed for {payload['tokenMint']} "
            f"[{error_class}] {code or ''} {message}".rstrip()
        )
        return ExecutionResult(success=False, error=message, error_code=code, error_class=error_class)

    async def _post(self, payload: dict) -> httpx.Response | ExecutionResult:
        # Only connection failures are retried: the request never reached the
        # service, so a resend cannot double-execute.
        attempt = 0
        while True:
            try:
                return await self._http().post(self.url, json=payload)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                attempt += 1
                if attempt > self.connect_retries:
                    logger.error(f"Execution service unreachable after {attempt} attempts: {e}")
                    return ExecutionResult(
                        success=False, error=f"Execution service unreachable: {e}", error_class=TRANSIENT,
                    )
                await asyncio.sleep(0.5 * attempt)
            except httpx.TimeoutException as e:
                logger.error(f"Execution service timed out: {e}")
                return ExecutionResult(success=False, error=f"Timed out: {e}", error_class=TRANSIENT)
            except httpx.HTTPError as e:
                logger.error(f"Execution request failed: {e}")
                return ExecutionResult(success=False, error=str(e), error_class=classify_error(None, str(e)))

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


_gateway: ExecutionGateway | None = None


def get_gateway() -> ExecutionGateway:
    global _gateway
    if _gateway is None:
        _gateway = ExecutionGateway()
    return _gateway
