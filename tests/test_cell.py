"""Tests for cells, slices and BOC serialization."""

import pytest

from tonsettle.ton.address import Address
from tonsettle.ton.cell import (
    BocError,
    BuildError,
    Builder,
    Cell,
    CellUnderflowError,
    crc32c,
    deserialize_boc,
)
from tonsettle.ton.wallet import WALLET_V4R2_CODE_HASH, wallet_code

EMPTY_CELL_HASH = "96a296d224f285c67bee93c30f8a309157f0daa35dc5b87e410b78630a09cfc7"


class TestCellHash:
    """Tests for the representation hash."""

    def test_empty_cell_hash(self):
        assert Cell.empty().hash().hex() == EMPTY_CELL_HASH

    def test_wallet_code_hash(self):
        assert wallet_code().hash().hex() == WALLET_V4R2_CODE_HASH

    def test_unaligned_data_is_padded(self):
        cell = Builder().store_uint(1, 1).end_cell()
        assert cell.data_bytes() == b"\xc0"
        assert cell.descriptors() == bytes([0, 1])

    def test_aligned_data_descriptor(self):
        cell = Builder().store_uint(0xABCD, 16).end_cell()
        assert cell.data_bytes() == b"\xab\xcd"
        assert cell.descriptors() == bytes([0, 4])

    def test_depth(self):
        leaf = Cell.empty()
        mid = Builder().store_ref(leaf).end_cell()
        top = Builder().store_ref(mid).store_ref(leaf).end_cell()
        assert leaf.depth() == 0
        assert mid.depth() == 1
        assert top.depth() == 2

    def test_hash_depends_on_children(self):
        a = Builder().store_ref(Builder().store_uint(1, 8).end_cell()).end_cell()
        b = Builder().store_ref(Builder().store_uint(2, 8).end_cell()).end_cell()
        assert a.hash() != b.hash()


class TestBuilder:
    """Tests for builder limits and encodings."""

    def test_bit_overflow(self):
        builder = Builder().store_uint(0, 1023)
        with pytest.raises(BuildError):
            builder.store_bit(1)

    def test_ref_overflow(self):
        builder = Builder()
        for _ in range(4):
            builder.store_ref(Cell.empty())
        with pytest.raises(BuildError):
            builder.store_ref(Cell.empty())

    def test_uint_range(self):
        with pytest.raises(BuildError):
            Builder().store_uint(256, 8)
        with pytest.raises(BuildError):
            Builder().store_uint(-1, 8)

    def test_int_range(self):
        with pytest.raises(BuildError):
            Builder().store_int(128, 8)
        cell = Builder().store_int(-1, 8).end_cell()
        assert cell.begin_parse().load_int(8) == -1

    def test_coins_encoding(self):
        assert Builder().store_coins(0).bits_used == 4
        cell = Builder().store_coins(1_000_000_000).end_cell()
        assert cell.bit_length == 4 + 32
        assert cell.begin_parse().load_coins() == 1_000_000_000

    def test_coins_too_large(self):
        with pytest.raises(BuildError):
            Builder().store_coins(1 << 120)

    def test_address_encoding(self):
        address = Address(-1, bytes(range(32)))
        cell = Builder().store_address(address).store_address(None).end_cell()
        assert cell.bit_length == 267 + 2

        reader = cell.begin_parse()
        assert reader.load_address() == address
        assert reader.load_address() is None

    def test_slice_underflow(self):
        reader = Builder().store_uint(5, 3).end_cell().begin_parse()
        with pytest.raises(CellUnderflowError):
            reader.load_uint(4)
        with pytest.raises(CellUnderflowError):
            reader.load_ref()

    def test_store_slice_copies_remainder(self):
        source = Builder().store_uint(0xAB, 8).store_uint(0xCD, 8).store_ref(Cell.empty()).end_cell()
        reader = source.begin_parse()
        reader.load_uint(8)
        copy = Builder().store_slice(reader).end_cell()
        assert copy == Builder().store_uint(0xCD, 8).store_ref(Cell.empty()).end_cell()


class TestBoc:
    """Tests for BOC serialization."""

    def test_crc32c_check_value(self):
        assert crc32c(b"123456789") == 0xE3069283

    def test_empty_cell_boc_layout(self):
        boc = Cell.empty().to_boc()
        assert boc[:-4] == bytes.fromhex("b5ee9c72" "41" "01" "01" "01" "00" "02" "00" "0000")
        assert boc[-4:] == crc32c(boc[:-4]).to_bytes(4, "little")

    def test_round_trip_preserves_hash(self):
        shared = Builder().store_uint(7, 3).end_cell()
        root = (
            Builder()
            .store_uint(0xDEADBEEF, 32)
            .store_ref(shared)
            .store_ref(Builder().store_ref(shared).end_cell())
            .end_cell()
        )
        parsed = Cell.from_boc(root.to_boc())
        assert parsed.hash() == root.hash()

    def test_identical_cells_are_stored_once(self):
        shared = Builder().store_uint(7, 3).end_cell()
        root = Builder().store_ref(shared).store_ref(shared).end_cell()
        boc = root.to_boc()
        # ref size 1 byte: cell count follows magic, flags and offset size
        assert boc[6] == 2

    def test_parents_precede_children(self):
        leaf = Builder().store_uint(1, 8).end_cell()
        root = Builder().store_ref(Builder().store_ref(leaf).end_cell()).store_ref(leaf).end_cell()
        roots = deserialize_boc(root.to_boc())
        assert roots[0] == root

    def test_round_trip_with_index(self):
        root = Builder().store_uint(1, 1).store_ref(Cell.empty()).end_cell()
        assert Cell.from_boc(root.to_boc(has_idx=True)) == root

    def test_wallet_code_round_trip(self):
        code = wallet_code()
        assert Cell.from_boc(code.to_boc()).hash() == code.hash()

    def test_corrupted_crc_rejected(self):
        boc = bytearray(Builder().store_uint(1, 8).end_cell().to_boc())
        boc[-1] ^= 0xFF
        with pytest.raises(BocError):
            Cell.from_boc(bytes(boc))

    def test_bad_magic_rejected(self):
        with pytest.raises(BocError):
            Cell.from_boc(b"\x00" * 20)
