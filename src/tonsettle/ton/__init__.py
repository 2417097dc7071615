"""TON primitives: addresses, cells/BOC and the v4r2 hot wallet."""

from tonsettle.ton.address import (
    Address,
    AddressParseError,
    MalformedLengthError,
    addresses_equal,
    normalize,
    parse_address,
    try_normalize,
)
from tonsettle.ton.cell import BocError, BuildError, Builder, Cell, Slice, begin_cell
from tonsettle.ton.wallet import HotWallet, SigningError, derive_address, get_hot_wallet

__all__ = [
    "Address",
    "AddressParseError",
    "MalformedLengthError",
    "addresses_equal",
    "normalize",
    "parse_address",
    "try_normalize",
    "BocError",
    "BuildError",
    "Builder",
    "Cell",
    "Slice",
    "begin_cell",
    "HotWallet",
    "SigningError",
    "derive_address",
    "get_hot_wallet",
]
