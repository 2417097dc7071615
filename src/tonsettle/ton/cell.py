"""Cells, cell builder/slice and the bag-of-cells (BOC) container.

A cell holds up to 1023 data bits and up to 4 references to other cells.
Its identity is the SHA-256 of its standard representation, which folds in
the depths and hashes of its children, so a tree of cells hashes like a
Merkle tree. Only ordinary (non-exotic, level 0) cells are supported.
"""

import hashlib
from typing import Optional, Sequence, Union

from tonsettle.ton.address import Address, parse_address

MAX_BITS = 1023
MAX_REFS = 4
MAX_COINS = 1 << 120

BOC_MAGIC = bytes.fromhex("b5ee9c72")


class CellError(ValueError):
    """Base class for cell errors."""

    pass


class BuildError(CellError):
    """Raised when a value does not fit the cell being built."""

    pass


class CellUnderflowError(CellError):
    """Raised when reading past the end of a slice."""

    pass


class BocError(CellError):
    """Raised for malformed BOC bytes."""

    pass


# ============ CRC32-C ============

def _make_crc32c_table() -> list[int]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0x82F63B78
            else:
                crc >>= 1
        table.append(crc)
    return table


_CRC32C_TABLE = _make_crc32c_table()


def crc32c(data: bytes) -> int:
    """CRC-32C (Castagnoli), as used for the BOC trailer."""
    crc = 0xFFFFFFFF
    for byte in data:
        crc = _CRC32C_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


# ============ Cell ============

class Cell:
    """Immutable cell. Build one with Builder, read one with begin_parse()."""

    __slots__ = ("_bits", "bit_length", "refs", "_hash", "_depth")

    def __init__(self, bits: int = 0, bit_length: int = 0, refs: Sequence["Cell"] = ()):
        if bit_length > MAX_BITS:
            raise BuildError(f"Cell overflow: {bit_length} bits > {MAX_BITS}")
        if len(refs) > MAX_REFS:
            raise BuildError(f"Cell overflow: {len(refs)} refs > {MAX_REFS}")
        self._bits = bits
        self.bit_length = bit_length
        self.refs: tuple[Cell, ...] = tuple(refs)
        self._hash: Optional[bytes] = None
        self._depth: Optional[int] = None

    @classmethod
    def empty(cls) -> "Cell":
        return cls()

    def data_bytes(self) -> bytes:
        """Data bits padded to whole bytes with a single 1 then zeros."""
        if self.bit_length % 8 == 0:
            return self._bits.to_bytes(self.bit_length // 8, "big")
        pad = 8 - (self.bit_length % 8)
        value = (self._bits << pad) | (1 << (pad - 1))
        return value.to_bytes((self.bit_length + pad) // 8, "big")

    def descriptors(self) -> bytes:
        d1 = len(self.refs)
        d2 = (self.bit_length + 7) // 8 + self.bit_length // 8
        return bytes([d1, d2])

    def depth(self) -> int:
        if self._depth is None:
            if self.refs:
                self._depth = max(ref.depth() for ref in self.refs) + 1
            else:
                self._depth = 0
        return self._depth

    def hash(self) -> bytes:
        """SHA-256 of the standard cell representation."""
        if self._hash is None:
            data = bytearray(self.descriptors())
            data += self.data_bytes()
            for ref in self.refs:
                data += ref.depth().to_bytes(2, "big")
            for ref in self.refs:
                data += ref.hash()
            self._hash = hashlib.sha256(bytes(data)).digest()
        return self._hash

    def begin_parse(self) -> "Slice":
        return Slice(self)

    def to_boc(self, has_idx: bool = False, has_crc32c: bool = True) -> bytes:
        return serialize_boc(self, has_idx=has_idx, has_crc32c=has_crc32c)

    @classmethod
    def from_boc(cls, data: Union[bytes, str]) -> "Cell":
        """Parse a single-root BOC (bytes or hex string)."""
        roots = deserialize_boc(data)
        if len(roots) != 1:
            raise BocError(f"Expected one root cell, got {len(roots)}")
        return roots[0]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Cell):
            return NotImplemented
        return self.hash() == other.hash()

    def __hash__(self) -> int:
        return hash(self.hash())

    def __repr__(self) -> str:
        return f"<Cell bits={self.bit_length} refs={len(self.refs)} hash={self.hash().hex()[:16]}>"


# ============ Builder ============

class Builder:
    """Appends bits and references, then freezes them into a Cell."""

    def __init__(self):
        self._bits = 0
        self._length = 0
        self._refs: list[Cell] = []

    @property
    def bits_used(self) -> int:
        return self._length

    def _append(self, value: int, bits: int) -> None:
        if self._length + bits > MAX_BITS:
            raise BuildError(f"Cell overflow: {self._length + bits} bits > {MAX_BITS}")
        self._bits = (self._bits << bits) | value
        self._length += bits

    def store_uint(self, value: int, bits: int) -> "Builder":
        if bits < 0 or value < 0 or value >= (1 << bits):
            raise BuildError(f"Value {value} does not fit in {bits} unsigned bits")
        self._append(value, bits)
        return self

    def store_int(self, value: int, bits: int) -> "Builder":
        if bits <= 0:
            raise BuildError("Signed field needs at least one bit")
        limit = 1 << (bits - 1)
        if not -limit <= value < limit:
            raise BuildError(f"Value {value} does not fit in {bits} signed bits")
        self._append(value & ((1 << bits) - 1), bits)
        return self

    def store_bit(self, bit: Union[bool, int]) -> "Builder":
        self._append(1 if bit else 0, 1)
        return self

    def store_bytes(self, data: bytes) -> "Builder":
        if data:
            self._append(int.from_bytes(data, "big"), len(data) * 8)
        return self

    def store_coins(self, amount: int) -> "Builder":
        """VarUInteger 16: 4-bit byte length, then the value."""
        if amount < 0 or amount >= MAX_COINS:
            raise BuildError(f"Coin amount out of range: {amount}")
        if amount == 0:
            return self.store_uint(0, 4)
        length = (amount.bit_length() + 7) // 8
        self.store_uint(length, 4)
        return self.store_uint(amount, length * 8)

    def store_address(self, address: Union[Address, str, None]) -> "Builder":
        """MsgAddress: addr_none (00) or addr_std without anycast."""
        if address is None:
            return self.store_uint(0, 2)
        if isinstance(address, str):
            address = parse_address(address)
        self.store_uint(0b10, 2)
        self.store_bit(0)
        self.store_int(address.workchain, 8)
        return self.store_bytes(address.hash_part)

    def store_ref(self, cell: Cell) -> "Builder":
        if len(self._refs) >= MAX_REFS:
            raise BuildError(f"Cell overflow: more than {MAX_REFS} refs")
        self._refs.append(cell)
        return self

    def store_slice(self, source: "Slice") -> "Builder":
        """Append the unread remainder of a slice."""
        remaining = source.remaining_bits
        if remaining:
            self._append(source.preload_uint(remaining), remaining)
        for ref in source.remaining_ref_cells():
            self.store_ref(ref)
        return self

    def end_cell(self) -> Cell:
        return Cell(self._bits, self._length, self._refs)


def begin_cell() -> Builder:
    return Builder()


# ============ Slice ============

class Slice:
    """Sequential reader over a cell's bits and refs."""

    def __init__(self, cell: Cell):
        self._cell = cell
        self._pos = 0
        self._ref_pos = 0

    @property
    def remaining_bits(self) -> int:
        return self._cell.bit_length - self._pos

    @property
    def remaining_refs(self) -> int:
        return len(self._cell.refs) - self._ref_pos

    def remaining_ref_cells(self) -> tuple[Cell, ...]:
        return self._cell.refs[self._ref_pos:]

    def preload_uint(self, bits: int) -> int:
        if bits > self.remaining_bits:
            raise CellUnderflowError(f"Need {bits} bits, {self.remaining_bits} left")
        if bits == 0:
            return 0
        shift = self._cell.bit_length - self._pos - bits
        return (self._cell._bits >> shift) & ((1 << bits) - 1)

    def load_uint(self, bits: int) -> int:
        value = self.preload_uint(bits)
        self._pos += bits
        return value

    def load_int(self, bits: int) -> int:
        value = self.load_uint(bits)
        if bits and value >= 1 << (bits - 1):
            value -= 1 << bits
        return value

    def load_bit(self) -> bool:
        return bool(self.load_uint(1))

    def load_bytes(self, length: int) -> bytes:
        return self.load_uint(length * 8).to_bytes(length, "big")

    def load_coins(self) -> int:
        length = self.load_uint(4)
        return self.load_uint(length * 8)

    def load_address(self) -> Optional[Address]:
        tag = self.load_uint(2)
        if tag == 0:
            return None
        if tag != 0b10:
            raise CellError(f"Unsupported address tag {tag:02b}")
        if self.load_bit():
            raise CellError("Anycast addresses are not supported")
        workchain = self.load_int(8)
        return Address(workchain, self.load_bytes(32))

    def load_ref(self) -> Cell:
        if self.remaining_refs <= 0:
            raise CellUnderflowError("No refs left")
        ref = self._cell.refs[self._ref_pos]
        self._ref_pos += 1
        return ref


# ============ BOC ============

def _byte_size(value: int) -> int:
    return max(1, (value.bit_length() + 7) // 8)


def _topological_order(root: Cell) -> list[Cell]:
    """Parents before children, identical cells (same hash) kept once."""
    seen: set[bytes] = set()
    postorder: list[Cell] = []

    def visit(cell: Cell) -> None:
        key = cell.hash()
        if key in seen:
            return
        seen.add(key)
        for ref in cell.refs:
            visit(ref)
        postorder.append(cell)

    visit(root)
    postorder.reverse()
    return postorder


def serialize_boc(root: Cell, has_idx: bool = False, has_crc32c: bool = True) -> bytes:
    """Serialize a cell tree into the standard BOC container."""
    cells = _topological_order(root)
    index = {cell.hash(): i for i, cell in enumerate(cells)}
    ref_size = _byte_size(len(cells))

    payloads = []
    for cell in cells:
        chunk = bytearray(cell.descriptors())
        chunk += cell.data_bytes()
        for ref in cell.refs:
            chunk += index[ref.hash()].to_bytes(ref_size, "big")
        payloads.append(bytes(chunk))

    total_size = sum(len(p) for p in payloads)
    offset_size = _byte_size(total_size)

    flags = (int(has_idx) << 7) | (int(has_crc32c) << 6) | ref_size
    out = bytearray(BOC_MAGIC)
    out.append(flags)
    out.append(offset_size)
    out += len(cells).to_bytes(ref_size, "big")
    out += (1).to_bytes(ref_size, "big")
    out += (0).to_bytes(ref_size, "big")
    out += total_size.to_bytes(offset_size, "big")
    out += (0).to_bytes(ref_size, "big")

    if has_idx:
        offset = 0
        for payload in payloads:
            offset += len(payload)
            out += offset.to_bytes(offset_size, "big")

    for payload in payloads:
        out += payload

    if has_crc32c:
        out += crc32c(bytes(out)).to_bytes(4, "little")

    return bytes(out)


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, size: int) -> bytes:
        if self.pos + size > len(self.data):
            raise BocError("Unexpected end of BOC")
        chunk = self.data[self.pos:self.pos + size]
        self.pos += size
        return chunk

    def uint(self, size: int) -> int:
        return int.from_bytes(self.take(size), "big")


def deserialize_boc(data: Union[bytes, str]) -> list[Cell]:
    """Parse a BOC and return its root cells."""
    if isinstance(data, str):
        data = bytes.fromhex(data)

    reader = _Reader(data)
    if reader.take(4) != BOC_MAGIC:
        raise BocError("Bad BOC magic")

    flags = reader.uint(1)
    has_idx = bool(flags & 0x80)
    has_crc = bool(flags & 0x40)
    ref_size = flags & 0x07
    if ref_size == 0 or ref_size > 4:
        raise BocError(f"Invalid ref size {ref_size}")

    if has_crc:
        body, trailer = data[:-4], data[-4:]
        if crc32c(body).to_bytes(4, "little") != trailer:
            raise BocError("BOC crc32c mismatch")

    offset_size = reader.uint(1)
    cell_count = reader.uint(ref_size)
    root_count = reader.uint(ref_size)
    reader.uint(ref_size)  # absent
    reader.uint(offset_size)  # total cells size
    root_indexes = [reader.uint(ref_size) for _ in range(root_count)]
    if has_idx:
        reader.take(cell_count * offset_size)

    raw_cells = []
    for _ in range(cell_count):
        d1, d2 = reader.take(2)
        if d1 & 0x08:
            raise BocError("Exotic cells are not supported")
        if d1 & 0x10:
            raise BocError("Cells with stored hashes are not supported")
        ref_count = d1 & 0x07
        if ref_count > MAX_REFS:
            raise BocError(f"Invalid ref count {ref_count}")

        data_len = (d2 + 1) // 2
        payload = reader.take(data_len)
        value = int.from_bytes(payload, "big")
        bit_length = data_len * 8
        if d2 % 2 == 1:
            if value == 0:
                raise BocError("Missing completion tag")
            trailing = (value & -value).bit_length()
            value >>= trailing
            bit_length -= trailing

        refs = [reader.uint(ref_size) for _ in range(ref_count)]
        raw_cells.append((value, bit_length, refs))

    built: list[Optional[Cell]] = [None] * cell_count
    for i in range(cell_count - 1, -1, -1):
        value, bit_length, refs = raw_cells[i]
        children = []
        for ref_index in refs:
            if ref_index <= i or ref_index >= cell_count:
                raise BocError(f"Cell {i} has invalid ref {ref_index}")
            children.append(built[ref_index])
        built[i] = Cell(value, bit_length, children)

    return [built[i] for i in root_indexes]
