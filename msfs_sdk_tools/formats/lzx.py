"""LZX decompressor for cabinet folders.

LZX is an LZ77 variant with canonical Huffman coding over a sliding window
of 2^15 to 2^21 bytes. In a cabinet, each data block carries one 32 KiB
output frame; the bitstream is a sequence of 16-bit little-endian words read
most significant bit first, realigned to a word boundary after every frame.
Decoder state (window, repeated offsets, tree lengths) persists across all
frames of a folder.
"""

from __future__ import annotations

import struct

import structlog

from msfs_sdk_tools.core.errors import ArchiveFormatError

logger = structlog.get_logger()

FRAME_SIZE = 32768
MIN_MATCH = 2
NUM_CHARS = 256
NUM_PRIMARY_LENGTHS = 7
NUM_SECONDARY_LENGTHS = 249
PRETREE_NUM_ELEMENTS = 20
ALIGNED_NUM_ELEMENTS = 8

BLOCKTYPE_VERBATIM = 1
BLOCKTYPE_ALIGNED = 2
BLOCKTYPE_UNCOMPRESSED = 3

POSITION_SLOTS = {15: 30, 16: 32, 17: 34, 18: 36, 19: 38, 20: 42, 21: 50}


def _build_slot_tables() -> tuple[list[int], list[int]]:
    extra_bits: list[int] = []
    bits = 0
    for slot in range(0, 52, 2):
        extra_bits.extend((bits, bits))
        if slot != 0 and bits < 17:
            bits += 1
    position_base: list[int] = []
    base = 0
    for bits in extra_bits[:51]:
        position_base.append(base)
        base += 1 << bits
    return extra_bits, position_base


EXTRA_BITS, POSITION_BASE = _build_slot_tables()


class LZXError(ArchiveFormatError):
    """Raised when an LZX stream is malformed."""


class HuffmanTable:
    """Canonical Huffman decode table indexed by the next ``bits`` input bits."""

    def __init__(self, lengths: list[int]):
        self.bits = max(lengths, default=0)
        size = 1 << self.bits
        self.symbols = [0] * size
        self.lengths = [0] * size

        code = 0
        for bit_length in range(1, self.bits + 1):
            shift = self.bits - bit_length
            for symbol, length in enumerate(lengths):
                if length != bit_length:
                    continue
                start = code << shift
                end = start + (1 << shift)
                if end > size:
                    raise LZXError("Huffman table oversubscribed", bit_length=bit_length)
                self.symbols[start:end] = [symbol] * (end - start)
                self.lengths[start:end] = [bit_length] * (end - start)
                code += 1
            code <<= 1

    @property
    def empty(self) -> bool:
        return self.bits == 0


class BitReader:
    """MSB-first reader over 16-bit little-endian words."""

    def __init__(self) -> None:
        self.data = b""
        self.pos = 0
        self.buffer = 0
        self.bits = 0

    def feed(self, data: bytes) -> None:
        """Append input, dropping bytes already consumed."""
        self.data = self.data[self.pos:] + data
        self.pos = 0

    def ensure(self, count: int) -> None:
        data = self.data
        while self.bits < count:
            # Past the end of input we shift in zeros; align_frame detects
            # whether any of them were actually consumed
            pos = self.pos
            if pos + 1 < len(data):
                word = data[pos] | (data[pos + 1] << 8)
            elif pos < len(data):
                word = data[pos]
            else:
                word = 0
            self.pos = pos + 2
            self.buffer = (self.buffer << 16) | word
            self.bits += 16

    def read(self, count: int) -> int:
        if count == 0:
            return 0
        self.ensure(count)
        self.bits -= count
        value = self.buffer >> self.bits
        self.buffer &= (1 << self.bits) - 1
        return value

    def decode(self, table: HuffmanTable) -> int:
        if table.empty:
            raise LZXError("Symbol read from empty Huffman table")
        self.ensure(table.bits)
        index = self.buffer >> (self.bits - table.bits)
        length = table.lengths[index]
        if length == 0:
            raise LZXError("Invalid Huffman code")
        self.bits -= length
        self.buffer &= (1 << self.bits) - 1
        return table.symbols[index]

    def align_uncompressed(self) -> None:
        """Skip 1-16 bits to the next word boundary before a stored block."""
        consumed = self.pos * 8 - self.bits
        self.pos = (consumed // 16 + 1) * 2
        self.buffer = 0
        self.bits = 0

    def align_frame(self) -> None:
        """Drop bits up to the next word boundary and unread prefetched words."""
        self.bits -= self.bits & 15
        self.pos -= self.bits // 8
        self.buffer = 0
        self.bits = 0
        if self.pos > len(self.data):
            raise LZXError("LZX input exhausted", needed=self.pos, available=len(self.data))

    def read_bytes(self, count: int) -> bytes:
        if self.bits:
            raise LZXError("Byte read from unaligned bitstream")
        chunk = self.data[self.pos:self.pos + count]
        if len(chunk) < count:
            raise LZXError("LZX stored data truncated", needed=count, available=len(chunk))
        self.pos += count
        return chunk

    def skip_byte(self) -> None:
        self.pos += 1


class LZXDecoder:
    """Stateful LZX decoder for one cabinet folder.

    Args:
        window_bits: Window size exponent (15-21)
    """

    def __init__(self, window_bits: int):
        if window_bits not in POSITION_SLOTS:
            raise LZXError(f"Unsupported LZX window size: 2^{window_bits}", window_bits=window_bits)
        self.window_size = 1 << window_bits
        self.window = bytearray(self.window_size)
        self.window_pos = 0
        self.main_elements = NUM_CHARS + POSITION_SLOTS[window_bits] * 8

        self.reader = BitReader()
        self.r0 = self.r1 = self.r2 = 1
        self.main_lengths = [0] * self.main_elements
        self.length_lengths = [0] * NUM_SECONDARY_LENGTHS
        self.main_table: HuffmanTable | None = None
        self.length_table: HuffmanTable | None = None
        self.aligned_table: HuffmanTable | None = None

        self.header_read = False
        self.block_type = 0
        self.block_length = 0
        self.block_remaining = 0

        self.intel_filesize = 0
        self.intel_started = False
        self.intel_curpos = 0
        self.frame_index = 0

    def decompress(self, data: bytes, out_size: int) -> bytes:
        """Decode one frame.

        Args:
            data: Compressed bytes of the next cabinet data block
            out_size: Expected uncompressed size of the frame

        Returns:
            Decompressed frame
        """
        if out_size > FRAME_SIZE:
            raise LZXError(f"LZX frame too large: {out_size}", size=out_size)

        reader = self.reader
        reader.feed(data)

        if not self.header_read:
            if reader.read(1):
                high = reader.read(16)
                low = reader.read(16)
                self.intel_filesize = (high << 16) | low
            self.header_read = True

        if self.window_pos == self.window_size:
            self.window_pos = 0
        frame_start = self.window_pos
        remaining = out_size

        while remaining > 0:
            if self.block_remaining == 0:
                if self.block_type == BLOCKTYPE_UNCOMPRESSED and self.block_length & 1:
                    reader.skip_byte()
                self._read_block_header()

            run = min(self.block_remaining, remaining)
            if self.block_type == BLOCKTYPE_UNCOMPRESSED:
                pos = self.window_pos
                self.window[pos:pos + run] = reader.read_bytes(run)
                self.window_pos = pos + run
            else:
                self._decode_run(run)
            self.block_remaining -= run
            remaining -= run

        reader.align_frame()

        frame = self.window[frame_start:frame_start + out_size]
        if (self.intel_started and self.intel_filesize
                and self.frame_index < 32768 and out_size > 10):
            self._undo_e8_translation(frame)
        self.intel_curpos += out_size
        self.frame_index += 1
        return bytes(frame)

    def _read_block_header(self) -> None:
        reader = self.reader
        block_type = reader.read(3)
        high = reader.read(16)
        low = reader.read(8)
        block_length = (high << 8) | low

        if block_type == BLOCKTYPE_ALIGNED:
            self.aligned_table = HuffmanTable([reader.read(3) for _ in range(ALIGNED_NUM_ELEMENTS)])

        if block_type in (BLOCKTYPE_VERBATIM, BLOCKTYPE_ALIGNED):
            self._read_lengths(self.main_lengths, 0, NUM_CHARS)
            self._read_lengths(self.main_lengths, NUM_CHARS, self.main_elements)
            self.main_table = HuffmanTable(self.main_lengths)
            if self.main_lengths[0xE8]:
                self.intel_started = True
            self._read_lengths(self.length_lengths, 0, NUM_SECONDARY_LENGTHS)
            self.length_table = HuffmanTable(self.length_lengths)
        elif block_type == BLOCKTYPE_UNCOMPRESSED:
            self.intel_started = True
            reader.align_uncompressed()
            self.r0, self.r1, self.r2 = struct.unpack("<III", reader.read_bytes(12))
        else:
            raise LZXError(f"Invalid LZX block type: {block_type}", block_type=block_type)

        logger.debug("lzx_block", block_type=block_type, length=block_length)
        self.block_type = block_type
        self.block_length = block_length
        self.block_remaining = block_length

    def _read_lengths(self, lengths: list[int], first: int, last: int) -> None:
        """Read delta-coded tree lengths through a fresh pretree."""
        reader = self.reader
        pretree = HuffmanTable([reader.read(4) for _ in range(PRETREE_NUM_ELEMENTS)])

        x = first
        while x < last:
            code = reader.decode(pretree)
            if code == 17:
                run = reader.read(4) + 4
                value = 0
            elif code == 18:
                run = reader.read(5) + 20
                value = 0
            elif code == 19:
                run = reader.read(1) + 4
                code = reader.decode(pretree)
                value = (lengths[x] - code) % 17
            else:
                lengths[x] = (lengths[x] - code) % 17
                x += 1
                continue

            if x + run > last:
                raise LZXError("Tree length run overflows table", position=x, run=run)
            lengths[x:x + run] = [value] * run
            x += run

    def _decode_run(self, run: int) -> None:
        reader = self.reader
        window = self.window
        window_mask = self.window_size - 1
        main_table = self.main_table
        length_table = self.length_table
        aligned = self.block_type == BLOCKTYPE_ALIGNED
        if main_table is None or length_table is None:
            raise LZXError("LZX block has no trees")

        pos = self.window_pos
        end = pos + run
        r0, r1, r2 = self.r0, self.r1, self.r2

        while pos < end:
            symbol = reader.decode(main_table)
            if symbol < NUM_CHARS:
                window[pos] = symbol
                pos += 1
                continue

            symbol -= NUM_CHARS
            match_length = symbol & NUM_PRIMARY_LENGTHS
            if match_length == NUM_PRIMARY_LENGTHS:
                match_length += reader.decode(length_table)
            match_length += MIN_MATCH

            slot = symbol >> 3
            if slot == 0:
                offset = r0
            elif slot == 1:
                offset = r1
                r1 = r0
                r0 = offset
            elif slot == 2:
                offset = r2
                r2 = r0
                r0 = offset
            else:
                extra = EXTRA_BITS[slot]
                offset = POSITION_BASE[slot] - 2
                if aligned and extra >= 3:
                    if self.aligned_table is None:
                        raise LZXError("Aligned block has no aligned tree")
                    offset += reader.read(extra - 3) << 3
                    offset += reader.decode(self.aligned_table)
                else:
                    offset += reader.read(extra)
                r2 = r1
                r1 = r0
                r0 = offset

            if pos + match_length > end:
                raise LZXError("LZX match overruns frame", position=pos, length=match_length)

            source = pos - offset
            if source < 0:
                source += self.window_size
            if offset >= match_length and source + match_length <= self.window_size:
                window[pos:pos + match_length] = window[source:source + match_length]
            else:
                for i in range(match_length):
                    window[pos + i] = window[(source + i) & window_mask]
            pos += match_length

        self.window_pos = pos
        self.r0, self.r1, self.r2 = r0, r1, r2

    def _undo_e8_translation(self, frame: bytearray) -> None:
        """Convert absolute CALL targets back to relative displacements."""
        filesize = self.intel_filesize
        curpos = self.intel_curpos
        i = 0
        end = len(frame) - 10
        while i < end:
            if frame[i] != 0xE8:
                i += 1
                curpos += 1
                continue
            absolute = int.from_bytes(frame[i + 1:i + 5], "little", signed=True)
            if -curpos <= absolute < filesize:
                relative = absolute - curpos if absolute >= 0 else absolute + filesize
                frame[i + 1:i + 5] = (relative & 0xFFFFFFFF).to_bytes(4, "little")
            i += 5
            curpos += 5
