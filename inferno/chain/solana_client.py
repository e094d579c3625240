"""
Solana implementation of the remote ledger client.

Every action is built and signed locally first, so its signature is known
before anything touches the network. The signature is handed to the
caller's `on_reference` hook, then the same signed bytes are sent (and
resent on transient errors) and confirmation is polled.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import base58
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.memo.constants import MEMO_PROGRAM_ID
from spl.memo.instructions import MemoParams, create_memo
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import BurnCheckedParams, burn_checked

from inferno.chain import pump
from inferno.chain.client import (
    ActionKind,
    BondingCurveState,
    LedgerClient,
    ReferenceHook,
    SubmitResult,
    VerificationResult,
    call_hook,
)
from inferno.chain.jupiter import SOL_MINT, JupiterUltraClient
from inferno.errors import (
    ConfigurationError,
    RemoteError,
    RemoteRejected,
    RemoteTimeout,
    VerificationUnavailable,
)

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (SolanaRpcException, OSError, asyncio.TimeoutError)


def load_keypair(secret: str) -> Keypair:
    """Parse a base58 secret key or a JSON byte array."""
    secret = secret.strip()
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        return Keypair.from_bytes(base58.b58decode(secret))
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"WALLET_PRIVATE_KEY is not a valid keypair: {exc}") from exc


def _backoff_delay(base: float, attempt: int, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter."""
    delay = min(max_delay, base * (2 ** attempt))
    return delay + delay * 0.1 * random.random()


def classify_rpc_error(error: Optional[str]) -> str:
    """Classify an RPC/preflight error as retryable, permanent, landed or unknown."""
    if not error:
        return "unknown"
    lower = error.lower()
    if "alreadyprocessed" in lower or "already been processed" in lower:
        return "landed"
    # Same signed bytes are resent, so an expired blockhash can never succeed
    if "blockhash" in lower:
        return "permanent"
    if "insufficientfunds" in lower or "insufficient funds" in lower:
        return "permanent"
    if "invalidaccountdata" in lower or "uninitializedaccount" in lower:
        return "permanent"
    if "signatureverificationfailed" in lower:
        return "permanent"
    if "custom program error" in lower or "instructionerrorcustom" in lower:
        return "permanent"
    if "accountinuse" in lower or "timeout" in lower or "timed out" in lower:
        return "retryable"
    if "connection" in lower or "network" in lower:
        return "retryable"
    if "rate" in lower or "429" in lower or "503" in lower:
        return "retryable"
    return "unknown"


def derive_associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    ata, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return ata


class SolanaLedgerClient(LedgerClient):
    """Collect pump.fun creator fees, buy through Jupiter Ultra, burn with SPL Token."""

    def __init__(
        self,
        rpc_url: str,
        keypair: Keypair,
        token_mint: str,
        token_decimals: int = 6,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        jupiter: Optional[JupiterUltraClient] = None,
    ):
        self.rpc_url = rpc_url
        self.keypair = keypair
        self._mint = Pubkey.from_string(token_mint)
        self.token_decimals = token_decimals
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.jupiter = jupiter or JupiterUltraClient(timeout_seconds=timeout_seconds)
        self._client = AsyncClient(rpc_url, commitment=Confirmed, timeout=timeout_seconds)
        self._token_program: Optional[Pubkey] = None

    @classmethod
    def from_settings(cls, settings) -> "SolanaLedgerClient":
        return cls(
            rpc_url=settings.rpc_url,
            keypair=load_keypair(settings.wallet_private_key),
            token_mint=settings.token_address,
            token_decimals=settings.token_decimals,
            timeout_seconds=settings.rpc_timeout_seconds,
            max_retries=settings.send_max_retries,
        )

    @property
    def operator_address(self) -> str:
        return str(self.keypair.pubkey())

    @property
    def fee_vault_address(self) -> str:
        return str(pump.derive_creator_vault(self.operator_address))

    @property
    def token_mint(self) -> str:
        return str(self._mint)

    async def close(self) -> None:
        await self._client.close()
        await self.jupiter.close()

    # =========================================================================
    # Reads
    # =========================================================================

    async def _get_token_program(self) -> Pubkey:
        if self._token_program is None:
            resp = await self._client.get_account_info(self._mint)
            if resp.value is None:
                raise RemoteError(f"Mint account not found: {self._mint}")
            self._token_program = resp.value.owner
        return self._token_program

    async def get_balance(self, account: str, asset_id: Optional[str] = None) -> int:
        owner = Pubkey.from_string(account)
        if asset_id is None:
            resp = await self._client.get_balance(owner)
            lamports = int(resp.value)
            if account == self.fee_vault_address:
                return max(0, lamports - pump.VAULT_RENT_EXEMPT_LAMPORTS)
            return lamports

        mint = Pubkey.from_string(asset_id)
        token_program = await self._get_token_program() if mint == self._mint else TOKEN_PROGRAM_ID
        ata = derive_associated_token_address(owner, mint, token_program)
        info = await self._client.get_account_info(ata)
        if info.value is None:
            return 0
        resp = await self._client.get_token_account_balance(ata)
        return int(resp.value.amount)

    async def get_bonding_curve(self, asset_id: str) -> Optional[BondingCurveState]:
        resp = await self._client.get_account_info(pump.derive_bonding_curve(asset_id))
        if resp.value is None:
            return None
        return pump.decode_bonding_curve(bytes(resp.value.data))

    async def is_listed(self, asset_id: str) -> bool:
        curve = await self.get_bonding_curve(asset_id)
        return curve is None or curve.complete

    async def verify_finalized(self, reference: str) -> VerificationResult:
        try:
            resp = await self._client.get_signature_statuses(
                [Signature.from_string(reference)], search_transaction_history=True
            )
        except _TRANSPORT_ERRORS as exc:
            raise VerificationUnavailable(f"Signature status lookup failed: {exc}", reference) from exc
        except RPCException as exc:
            raise VerificationUnavailable(f"Signature status lookup rejected: {exc}", reference) from exc

        status = resp.value[0] if resp.value else None
        if status is None:
            return VerificationResult(verified=False, error="not_found")
        if status.err:
            return VerificationResult(verified=False, slot=status.slot, error=str(status.err))
        if status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        ):
            return VerificationResult(verified=True, slot=status.slot)
        raise VerificationUnavailable(f"Transaction {reference[:16]}... only processed so far", reference)

    # =========================================================================
    # Actions
    # =========================================================================

    async def submit_action(
        self,
        kind: ActionKind,
        params: Dict[str, Any],
        on_reference: Optional[ReferenceHook] = None,
    ) -> SubmitResult:
        kind = ActionKind(kind)
        if kind == ActionKind.COLLECT_INPUT:
            return await self._collect_creator_fees(on_reference)
        if kind == ActionKind.ACQUIRE_OUTPUT:
            return await self._buy_with_jupiter(
                int(params["amount"]), params.get("slippage_bps"), on_reference
            )
        if kind == ActionKind.FINALIZE:
            return await self._burn(int(params["quantity"]), params.get("memo"), on_reference)
        raise ValueError(f"Unsupported action kind: {kind}")

    async def _sign(self, instructions: List[Instruction]) -> VersionedTransaction:
        try:
            blockhash = (await self._client.get_latest_blockhash()).value.blockhash
        except _TRANSPORT_ERRORS as exc:
            raise RemoteError(f"Could not fetch blockhash: {exc}", retryable=True) from exc
        message = MessageV0.try_compile(self.keypair.pubkey(), instructions, [], blockhash)
        return VersionedTransaction(message, [self.keypair])

    async def _collect_creator_fees(self, on_reference: Optional[ReferenceHook]) -> SubmitResult:
        tx = await self._sign([pump.collect_creator_fee_instruction(self.keypair.pubkey())])
        signature = await self._send_and_confirm(tx, on_reference)
        logger.info(f"Creator fees collected: {signature}")
        return SubmitResult(reference=signature)

    async def _buy_with_jupiter(
        self,
        lamports: int,
        slippage_bps: Optional[int],
        on_reference: Optional[ReferenceHook],
    ) -> SubmitResult:
        order = await self.jupiter.get_order(
            SOL_MINT, self.token_mint, lamports, self.operator_address, slippage_bps
        )
        unsigned = VersionedTransaction.from_bytes(base64.b64decode(order["transaction"]))
        signed = VersionedTransaction(unsigned.message, [self.keypair])
        signature = str(signed.signatures[0])
        await call_hook(on_reference, signature)

        result = await self.jupiter.execute(
            base64.b64encode(bytes(signed)).decode("ascii"),
            order["requestId"],
            signature,
        )
        # The order's outAmount is a quote; only the execute result is observed
        received = int(result.get("outputAmountResult") or 0)
        if received <= 0:
            raise RemoteRejected(
                f"Jupiter execute reported no output amount for {signature}",
                reference=signature,
            )
        logger.info(f"Jupiter swap landed: {signature} ({lamports} lamports -> {received} units)")
        return SubmitResult(reference=signature, reported_quantity=received)

    async def _burn(
        self,
        quantity: int,
        memo: Optional[str],
        on_reference: Optional[ReferenceHook],
    ) -> SubmitResult:
        owner = self.keypair.pubkey()
        token_program = await self._get_token_program()
        instructions = [
            burn_checked(
                BurnCheckedParams(
                    program_id=token_program,
                    mint=self._mint,
                    account=derive_associated_token_address(owner, self._mint, token_program),
                    owner=owner,
                    amount=quantity,
                    decimals=self.token_decimals,
                )
            )
        ]
        if memo:
            instructions.append(
                create_memo(MemoParams(program_id=MEMO_PROGRAM_ID, signer=owner, message=memo.encode("utf-8")))
            )
        tx = await self._sign(instructions)
        signature = await self._send_and_confirm(tx, on_reference)
        logger.info(f"Burned {quantity} units: {signature}")
        return SubmitResult(reference=signature, reported_quantity=quantity)

    async def _send_and_confirm(
        self, tx: VersionedTransaction, on_reference: Optional[ReferenceHook]
    ) -> str:
        """
        Send one signed transaction and wait for confirmation.

        Only these exact bytes are ever resent, so a retry can never
        produce a second action.
        """
        signature = str(tx.signatures[0])
        await call_hook(on_reference, signature)

        opts = TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=3)
        last_error = None
        sent = False
        for attempt in range(self.max_retries):
            try:
                await self._client.send_raw_transaction(bytes(tx), opts=opts)
                sent = True
                break
            except RPCException as exc:
                error = str(exc)
                verdict = classify_rpc_error(error)
                if verdict == "landed":
                    sent = True
                    break
                if verdict != "retryable":
                    raise RemoteRejected(f"Transaction rejected: {error}", reference=signature) from exc
                last_error = error
            except _TRANSPORT_ERRORS as exc:
                last_error = str(exc) or type(exc).__name__

            if attempt < self.max_retries - 1:
                wait_time = _backoff_delay(self.retry_delay, attempt)
                logger.info(f"Send retry {attempt + 1}/{self.max_retries} in {wait_time:.1f}s: {last_error}")
                await asyncio.sleep(wait_time)

        if not sent:
            # A send that errored on the wire may still have been forwarded
            raise RemoteTimeout(
                f"Send failed after {self.max_retries} attempts: {last_error}", reference=signature
            )

        confirmed, error = await self._confirm_signature(signature)
        if confirmed:
            return signature
        if error == "confirmation_timeout":
            raise RemoteTimeout(
                f"Confirmation timed out after {self.timeout_seconds}s", reference=signature
            )
        raise RemoteRejected(f"Transaction failed: {error}", reference=signature)

    async def _confirm_signature(
        self, signature: str, poll_interval: float = 0.5
    ) -> Tuple[bool, Optional[str]]:
        """Poll signature status until confirmed, failed or timed out."""
        start = time.monotonic()
        poll_count = 0
        sig = Signature.from_string(signature)

        while time.monotonic() - start < self.timeout_seconds:
            try:
                resp = await self._client.get_signature_statuses([sig])
                value = resp.value[0] if resp.value else None
                if value:
                    if value.err:
                        logger.warning(f"Transaction {signature[:16]}... failed: {value.err}")
                        return False, str(value.err)
                    if value.confirmation_status in (
                        TransactionConfirmationStatus.Confirmed,
                        TransactionConfirmationStatus.Finalized,
                    ):
                        return True, None
            except _TRANSPORT_ERRORS as exc:
                logger.debug(f"Status check failed: {exc}")

            poll_count += 1
            await asyncio.sleep(min(poll_interval * (1.2 ** min(poll_count, 10)), 2.0))

        logger.warning(f"Transaction {signature[:16]}... confirmation timeout after {self.timeout_seconds}s")
        return False, "confirmation_timeout"
