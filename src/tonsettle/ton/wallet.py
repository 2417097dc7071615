"""Wallet v4r2 hot wallet: address derivation and signed transfers.

Transfer layout (one outgoing message):

    internal message  = int_msg_info, no IHR, non-bounceable, src addr_none,
                        dest, value, zero fees/lt/time, no init, empty body
    body              = subwallet_id:32 | valid_until:32 | seqno:32 | op:8 = 0
                        | send_mode:8 = 3 | ^internal
    signed body       = ed25519(hash(body)):512 | body fields
    external message  = ext_in_msg_info, src addr_none, dest = wallet,
                        import_fee 0, no init, body as ref

Nothing here touches the network.
"""

import logging
import time
from typing import Optional, Sequence, Union

from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey
from pytoniq_core.crypto.keys import mnemonic_is_valid, mnemonic_to_private_key

from tonsettle.ton.address import Address, AddressParseError, parse_address
from tonsettle.ton.cell import BuildError, Builder, Cell, MAX_COINS

logger = logging.getLogger(__name__)

DEFAULT_SUBWALLET_ID = 698983191
DEFAULT_VALIDITY_SECONDS = 300
SEND_MODE_PAY_FEES_SEPARATELY = 3  # pay fees separately + ignore errors
MNEMONIC_WORD_COUNT = 24

WALLET_V4R2_CODE_HASH = "feb5ff6820e2ff0d9483e7e0d62c817d846789fb4ae580c878866d959dabd5c0"

WALLET_V4R2_CODE_BOC = (
    "B5EE9C72410214010002D4000114FF00F4A413F4BCF2C80B010201200203020148040504"
    "F8F28308D71820D31FD31FD31F02F823BBF264ED44D0D31FD31FD3FFF404D15143BAF2A1"
    "5151BAF2A205F901541064F910F2A3F80024A4C8CB1F5240CB1F5230CBFF5210F400C9ED"
    "54F80F01D30721C0009F6C519320D74A96D307D402FB00E830E021C001E30021C002E300"
    "01C0039130E30D03A4C8CB1F12CB1FCBFF1011121302E6D001D0D3032171B0925F04E022"
    "D749C120925F04E002D31F218210706C7567BD22821064737472BDB0925F05E003FA4030"
    "20FA4401C8CA07CBFFC9D0ED44D0810140D721F404305C810108F40A6FA131B3925F07E0"
    "05D33FC8258210706C7567BA923830E30D03821064737472BA925F06E30D060702012008"
    "09007801FA00F40430F8276F2230500AA121BEF2E0508210706C7567831EB17080185004"
    "CB0526CF1658FA0219F400CB6917CB1F5260CB3F20C98040FB0006008A5004810108F459"
    "30ED44D0810140D720C801CF16F400C9ED540172B08E23821064737472831EB170801850"
    "05CB055003CF1623FA0213CB6ACB1FCB3FC98040FB00925F03E20201200A0B0059BD242B"
    "6F6A2684080A06B90FA0218470D4080847A4937D29910CE6903E9FF9837812801B781014"
    "8987159F31840201580C0D0011B8C97ED44D0D70B1F8003DB29DFB513420405035C87D01"
    "0C00B23281F2FFF274006040423D029BE84C600201200E0F0019ADCE76A26840206B90EB"
    "85FFC00019AF1DF6A26840106B90EB858FC0006ED207FA00D4D422F90005C8CA0715CBFF"
    "C9D077748018C8CB05CB0222CF165005FA0214CB6B12CCCCC973FB00C84014810108F451"
    "F2A7020070810108D718FA00D33FC8542047810108F451F2A782106E6F746570748018C8"
    "CB05CB025006CF165004FA0214CB6A12CB1FCB3FC973FB0002006C810108D718FA00D33F"
    "305224810108F459F2A782106473747270748018C8CB05CB025005CF165003FA0213CB6A"
    "CB1F12CB3FC973FB00000AF400C9ED54696225E5"
)

_code_cell: Optional[Cell] = None


class SigningError(Exception):
    """Raised when key material is unusable or signing fails."""

    pass


def wallet_code() -> Cell:
    """The wallet v4r2 contract code cell (parsed once)."""
    global _code_cell
    if _code_cell is None:
        _code_cell = Cell.from_boc(WALLET_V4R2_CODE_BOC)
    return _code_cell


def mnemonic_to_seed(words: Union[str, Sequence[str]]) -> bytes:
    """Derive the 32-byte Ed25519 seed from a TON mnemonic.

    Raises:
        SigningError: wrong word count, or the words fail the TON seed check
    """
    if isinstance(words, str):
        words = words.split()
    words = [w.strip().lower() for w in words if w.strip()]
    if len(words) != MNEMONIC_WORD_COUNT:
        raise SigningError(
            f"Mnemonic must have {MNEMONIC_WORD_COUNT} words, got {len(words)}"
        )
    if not mnemonic_is_valid(words):
        raise SigningError("Mnemonic is not a valid TON seed phrase")

    _, private_key = mnemonic_to_private_key(words)
    # nacl secret keys are seed || public key
    return bytes(private_key)[:32]


def build_data_cell(public_key: bytes, subwallet_id: int = DEFAULT_SUBWALLET_ID) -> Cell:
    """Initial persistent data: seqno=0, subwallet id, public key, no plugins."""
    return (
        Builder()
        .store_uint(0, 32)
        .store_uint(subwallet_id, 32)
        .store_bytes(public_key)
        .store_bit(0)
        .end_cell()
    )


def build_state_init(public_key: bytes, subwallet_id: int = DEFAULT_SUBWALLET_ID) -> Cell:
    """StateInit with code and data, no split depth, special or library."""
    return (
        Builder()
        .store_bit(0)  # split_depth
        .store_bit(0)  # special
        .store_bit(1)
        .store_ref(wallet_code())
        .store_bit(1)
        .store_ref(build_data_cell(public_key, subwallet_id))
        .store_bit(0)  # library
        .end_cell()
    )


def derive_address(
    public_key: bytes,
    subwallet_id: int = DEFAULT_SUBWALLET_ID,
    workchain: int = 0,
) -> Address:
    """Address of the v4r2 wallet owned by public_key."""
    if len(public_key) != 32:
        raise SigningError(f"Public key must be 32 bytes, got {len(public_key)}")
    return Address(workchain, build_state_init(public_key, subwallet_id).hash())


def build_internal_message(destination: Union[Address, str], amount: int) -> Cell:
    """Non-bounceable internal transfer of `amount` nanotons with empty body."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise BuildError(f"Amount must be a positive integer, got {amount!r}")
    if amount >= MAX_COINS:
        raise BuildError(f"Amount too large: {amount}")
    if isinstance(destination, str):
        try:
            destination = parse_address(destination)
        except AddressParseError as e:
            raise BuildError(f"Invalid destination address: {e}") from e

    return (
        Builder()
        .store_bit(0)  # int_msg_info$0
        .store_bit(1)  # ihr_disabled
        .store_bit(0)  # bounce
        .store_bit(0)  # bounced
        .store_address(None)
        .store_address(destination)
        .store_coins(amount)
        .store_bit(0)  # no extra currencies
        .store_coins(0)  # ihr_fee
        .store_coins(0)  # fwd_fee
        .store_uint(0, 64)  # created_lt
        .store_uint(0, 32)  # created_at
        .store_bit(0)  # no state_init
        .store_bit(0)  # body inline, empty
        .end_cell()
    )


class HotWallet:
    """Signing side of a wallet v4r2 contract."""

    def __init__(
        self,
        signing_key: SigningKey,
        subwallet_id: int = DEFAULT_SUBWALLET_ID,
        workchain: int = 0,
    ):
        self._signing_key = signing_key
        self.subwallet_id = subwallet_id
        self.workchain = workchain
        self.public_key: bytes = bytes(signing_key.verify_key)
        self.address: Address = derive_address(self.public_key, subwallet_id, workchain)

    @classmethod
    def from_seed(cls, seed: bytes, **kwargs) -> "HotWallet":
        try:
            key = SigningKey(seed)
        except (CryptoError, TypeError, ValueError) as e:
            raise SigningError(f"Invalid signing seed: {e}") from e
        return cls(key, **kwargs)

    @classmethod
    def from_mnemonic(cls, words: Union[str, Sequence[str]], **kwargs) -> "HotWallet":
        return cls.from_seed(mnemonic_to_seed(words), **kwargs)

    @property
    def verify_key(self) -> VerifyKey:
        return self._signing_key.verify_key

    def state_init(self) -> Cell:
        return build_state_init(self.public_key, self.subwallet_id)

    def _body_fields(self, builder: Builder, seqno: int, valid_until: int, message: Cell) -> Builder:
        return (
            builder.store_uint(self.subwallet_id, 32)
            .store_uint(valid_until, 32)
            .store_uint(seqno, 32)
            .store_uint(0, 8)  # op: simple send
            .store_uint(SEND_MODE_PAY_FEES_SEPARATELY, 8)
            .store_ref(message)
        )

    def build_unsigned_body(self, seqno: int, valid_until: int, message: Cell) -> Cell:
        return self._body_fields(Builder(), seqno, valid_until, message).end_cell()

    def sign(self, cell: Cell) -> bytes:
        """Ed25519 signature over the cell hash."""
        try:
            return self._signing_key.sign(cell.hash()).signature
        except (CryptoError, TypeError, ValueError) as e:
            raise SigningError(f"Signing failed: {e}") from e

    def build_external_message(self, body: Cell) -> Cell:
        return (
            Builder()
            .store_uint(0b10, 2)  # ext_in_msg_info$10
            .store_address(None)
            .store_address(self.address)
            .store_coins(0)  # import_fee
            .store_bit(0)  # no state_init
            .store_bit(1)  # body as ref
            .store_ref(body)
            .end_cell()
        )

    def build_transfer_message(
        self,
        seqno: int,
        destination: Union[Address, str],
        amount: int,
        validity_seconds: int = DEFAULT_VALIDITY_SECONDS,
        now: Optional[int] = None,
    ) -> Cell:
        """External message cell carrying a signed single-transfer order."""
        if now is None:
            now = int(time.time())
        valid_until = now + validity_seconds

        internal = build_internal_message(destination, amount)
        unsigned = self.build_unsigned_body(seqno, valid_until, internal)
        signature = self.sign(unsigned)

        signed = self._body_fields(
            Builder().store_bytes(signature), seqno, valid_until, internal
        ).end_cell()
        return self.build_external_message(signed)

    def build_signed_transfer(
        self,
        seqno: int,
        destination: Union[Address, str],
        amount: int,
        validity_seconds: int = DEFAULT_VALIDITY_SECONDS,
        now: Optional[int] = None,
    ) -> bytes:
        """BOC bytes of a signed transfer ready for broadcast."""
        message = self.build_transfer_message(seqno, destination, amount, validity_seconds, now)
        logger.debug(
            f"Built transfer seqno={seqno} amount={amount} from {self.address.to_raw()}"
        )
        return message.to_boc()


def get_hot_wallet() -> Optional[HotWallet]:
    """Build the hot wallet from settings, or None if no mnemonic is set."""
    from tonsettle.config import get_settings

    settings = get_settings()
    if not settings.wallet_mnemonic:
        return None
    return HotWallet.from_mnemonic(
        settings.wallet_mnemonic,
        subwallet_id=settings.wallet_subwallet_id,
        workchain=settings.wallet_workchain,
    )
