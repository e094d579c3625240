"""
pump.fun program helpers: PDA derivation, bonding curve decoding and the
creator fee collection instruction.
"""

from __future__ import annotations

import struct
from typing import Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from inferno.chain.client import BondingCurveState

PUMP_FUN_PROGRAM_ID = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
PUMP_AMM_PROGRAM_ID = "pAMMBay6oceH9fJKBRHGP5D4bD4sWpmSwMn52FMfXEA"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

BONDING_CURVE_SEED = b"bonding-curve"
CREATOR_VAULT_SEED = b"creator-vault"
EVENT_AUTHORITY_SEED = b"__event_authority"

COLLECT_CREATOR_FEE_DISCRIMINATOR = bytes([20, 22, 86, 123, 198, 28, 219, 132])

# Anchor discriminator, five u64 reserves/supply fields, then the `complete` flag
_BONDING_CURVE_LAYOUT = struct.Struct("<8sQQQQQ?")

# Rent-exempt minimum of a zero-data system account; never collectible
VAULT_RENT_EXEMPT_LAMPORTS = 890_880


def _program() -> Pubkey:
    return Pubkey.from_string(PUMP_FUN_PROGRAM_ID)


def derive_bonding_curve(mint: str) -> Pubkey:
    pda, _ = Pubkey.find_program_address(
        [BONDING_CURVE_SEED, bytes(Pubkey.from_string(mint))], _program()
    )
    return pda


def derive_creator_vault(creator: str) -> Pubkey:
    pda, _ = Pubkey.find_program_address(
        [CREATOR_VAULT_SEED, bytes(Pubkey.from_string(creator))], _program()
    )
    return pda


def derive_event_authority() -> Pubkey:
    pda, _ = Pubkey.find_program_address([EVENT_AUTHORITY_SEED], _program())
    return pda


def decode_bonding_curve(data: bytes) -> Optional[BondingCurveState]:
    """Decode raw account data; None if it is too short to be a curve."""
    if data is None or len(data) < _BONDING_CURVE_LAYOUT.size:
        return None
    (
        _discriminator,
        virtual_token_reserves,
        virtual_sol_reserves,
        real_token_reserves,
        real_sol_reserves,
        token_total_supply,
        complete,
    ) = _BONDING_CURVE_LAYOUT.unpack_from(data, 0)
    return BondingCurveState(
        virtual_token_reserves=virtual_token_reserves,
        virtual_sol_reserves=virtual_sol_reserves,
        real_token_reserves=real_token_reserves,
        real_sol_reserves=real_sol_reserves,
        token_total_supply=token_total_supply,
        complete=bool(complete),
    )


def collect_creator_fee_instruction(creator: Pubkey) -> Instruction:
    """Move accrued creator fees from the creator vault to the creator."""
    accounts = [
        AccountMeta(pubkey=creator, is_signer=True, is_writable=True),
        AccountMeta(pubkey=derive_creator_vault(str(creator)), is_signer=False, is_writable=True),
        AccountMeta(pubkey=Pubkey.from_string(SYSTEM_PROGRAM_ID), is_signer=False, is_writable=False),
        AccountMeta(pubkey=derive_event_authority(), is_signer=False, is_writable=False),
        AccountMeta(pubkey=_program(), is_signer=False, is_writable=False),
    ]
    return Instruction(_program(), COLLECT_CREATOR_FEE_DISCRIMINATOR, accounts)
