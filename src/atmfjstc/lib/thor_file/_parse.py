"""
Decoders for the binary structures of a THOR archive: header, table descriptor and entries.
"""

import codecs
import logging
import zlib

from dataclasses import replace
from types import MappingProxyType
from typing import Dict, Optional, Tuple

from atmfjstc.lib.binary_utils.BinaryReader import BinaryReader, BinaryReaderFormatError

from . import THOR_MAGIC, PATH_ENCODING, ThorMode, ThorEntryFlags, ThorHeader, ThorTableDescriptor, \
    SingleFileTableDesc, MultipleFilesTableDesc, ThorEntry, ThorContainer, ThorDecompressionError, NotAThorFileError, \
    ThorInvalidModeError, ThorInvalidFileCountError, ThorTableOffsetUnderflowError, ThorTableDecompressionError, \
    ThorPathDecodingError, ThorTruncatedInputError, ThorUnparseableEntryTableError


_log = logging.getLogger(__name__)


# Bytes left undefined by Python's cp1252 codec, but mapped to the same-numbered C1 controls by the WHATWG variant of
# windows-1252 that archive writers use. Paths in legacy multi-byte codepages (e.g. CP949) routinely contain them.
_CP1252_UNDEFINED_BYTES = frozenset(b'\x81\x8d\x8f\x90\x9d')

_PATH_DECODING_ERRORS = 'thor-cp1252-c1-controls'


def _decode_cp1252_c1_controls(error: UnicodeError) -> Tuple[str, int]:
    if not isinstance(error, UnicodeDecodeError):
        raise error

    bad_bytes = error.object[error.start:error.end]
    if not all(byte in _CP1252_UNDEFINED_BYTES for byte in bad_bytes):
        raise error

    return bytes(bad_bytes).decode('latin-1'), error.end


codecs.register_error(_PATH_DECODING_ERRORS, _decode_cp1252_c1_controls)


def parse_thor_container(data: bytes, file_name: Optional[str] = None) -> ThorContainer:
    reader = BinaryReader(data, big_endian=False)

    try:
        header = read_header(reader, file_name)
        table = read_table_descriptor(reader, header.mode)

        if isinstance(table, SingleFileTableDesc):
            entries = _assemble_single_file(reader, file_name)
        else:
            table, entries = _assemble_multiple_files(data, reader, table, file_name)
    except BinaryReaderFormatError as e:
        raise ThorTruncatedInputError(file_name) from e

    _log.debug(
        "Opened THOR archive%s: mode=%s, declared files=%d, entries=%d, target store=%r",
        f" '{file_name}'" if file_name is not None else '', header.mode.name, header.file_count, len(entries),
        header.target_store_name
    )

    content_entries = sum(1 for entry in entries.values() if not entry.is_removed)
    if content_entries != header.file_count:
        _log.warning(
            "Archive declares %d files, but %d entries with content were found", header.file_count, content_entries
        )

    return ThorContainer(header=header, table=table, entries=MappingProxyType(entries))


def read_header(reader: BinaryReader, file_name: Optional[str] = None) -> ThorHeader:
    try:
        reader.expect_magic(THOR_MAGIC, 'THOR signature')
    except BinaryReaderFormatError as e:
        raise NotAThorFileError(file_name) from e

    merge_flag = reader.read_fixed_size_int(1, 'merge flag')

    raw_file_count = reader.read_fixed_size_int(4, 'file count')
    if raw_file_count == 0:
        raise ThorInvalidFileCountError(file_name, raw_file_count)

    raw_mode = reader.read_fixed_size_int(2, 'archive mode', signed=True)
    try:
        mode = ThorMode(raw_mode)
    except ValueError:
        raise ThorInvalidModeError(file_name, raw_mode) from None

    target_store_name = decode_path_text(
        reader.read_length_prefixed_bytes('target store name'), 'target store name', file_name
    )

    return ThorHeader(
        merge_into_base_store=(merge_flag == 1),
        file_count=raw_file_count - 1,  # The stored count includes one reserved slot
        mode=mode,
        target_store_name=target_store_name,
    )


def read_table_descriptor(reader: BinaryReader, mode: ThorMode) -> ThorTableDescriptor:
    if mode == ThorMode.SINGLE_FILE:
        reader.skip_bytes(1, 'reserved byte')
        return SingleFileTableDesc()

    table_compressed_size = reader.read_fixed_size_int(4, 'compressed table size', signed=True)
    table_offset = reader.read_fixed_size_int(4, 'table offset', signed=True)

    return MultipleFilesTableDesc(table_compressed_size, table_offset)


def read_single_file_entry(reader: BinaryReader, file_name: Optional[str] = None) -> ThorEntry:
    size_compressed = reader.read_fixed_size_int(4, 'compressed size', signed=True)
    size_decompressed = reader.read_fixed_size_int(4, 'decompressed size', signed=True)
    relative_path = decode_path_text(reader.read_length_prefixed_bytes('entry path'), 'entry path', file_name)

    # The content position is implicit in this mode, the assembler fills it in
    return ThorEntry(size_compressed, size_decompressed, relative_path, is_removed=False, offset=0)


def read_multiple_files_entry(reader: BinaryReader, file_name: Optional[str] = None) -> ThorEntry:
    relative_path = decode_path_text(reader.read_length_prefixed_bytes('entry path'), 'entry path', file_name)
    flags = ThorEntryFlags(reader.read_fixed_size_int(1, 'entry flags'))

    # Deletion markers end right after the flags
    if flags & ThorEntryFlags.REMOVED:
        return ThorEntry(0, 0, relative_path, is_removed=True, offset=0)

    offset = reader.read_fixed_size_int(4, 'entry offset')
    size_compressed = reader.read_fixed_size_int(4, 'compressed size', signed=True)
    size_decompressed = reader.read_fixed_size_int(4, 'decompressed size', signed=True)

    return ThorEntry(size_compressed, size_decompressed, relative_path, is_removed=False, offset=offset)


def read_entry_table(table_data: bytes, file_name: Optional[str] = None) -> Dict[str, ThorEntry]:
    """
    Decodes the entries in an (already decompressed) multiple-files table.

    The entries have variable length, so they can only be decoded in sequence. The table must contain at least one
    entry and must be consumed exactly. Later entries replace earlier ones with the same path.
    """
    reader = BinaryReader(table_data, big_endian=False)
    entries = {}

    try:
        while True:
            entry = read_multiple_files_entry(reader, file_name)
            entries[entry.relative_path] = entry

            if reader.bytes_remaining() == 0:
                break
    except BinaryReaderFormatError as e:
        raise ThorUnparseableEntryTableError(
            file_name, f"decoding stopped after {len(entries)} entries, at position {reader.tell()} of "
            f"{len(table_data)}"
        ) from e

    return entries


def decode_path_text(raw_value: bytes, meaning: str, file_name: Optional[str] = None) -> str:
    try:
        return raw_value.decode(PATH_ENCODING, errors=_PATH_DECODING_ERRORS)
    except UnicodeDecodeError as e:
        raise ThorPathDecodingError(file_name, meaning, raw_value) from e


def inflate(data: bytes) -> Tuple[bytes, int]:
    """
    Decompresses a zlib stream starting at the beginning of `data`.

    The stream is decoded up to its own end marker. Any data past that is ignored.

    Returns:
        A tuple of the decompressed data and the number of bytes the compressed stream actually took up.

    Raises:
        ThorDecompressionError: If the stream is corrupt, or the data ends before the stream does.
    """

    decompressor = zlib.decompressobj()

    try:
        inflated = decompressor.decompress(data)
    except zlib.error as e:
        raise ThorDecompressionError(f"Corrupt zlib stream: {e}") from e

    if not decompressor.eof:
        raise ThorDecompressionError("Data ends in the middle of the zlib stream")

    return inflated, len(data) - len(decompressor.unused_data)


def _assemble_single_file(reader: BinaryReader, file_name: Optional[str]) -> Dict[str, ThorEntry]:
    entry = read_single_file_entry(reader, file_name)
    entry = replace(entry, offset=reader.tell())

    return {entry.relative_path: entry}


def _assemble_multiple_files(
    data: bytes, reader: BinaryReader, table: MultipleFilesTableDesc, file_name: Optional[str]
) -> Tuple[MultipleFilesTableDesc, Dict[str, ThorEntry]]:
    consumed = reader.tell()

    if table.table_offset < consumed:
        raise ThorTableOffsetUnderflowError(file_name, table.table_offset, consumed)

    table = replace(table, rebased_table_offset=table.table_offset - consumed)
    remaining_data = memoryview(data)[consumed:]

    try:
        table_data, actual_compressed_size = inflate(remaining_data[table.rebased_table_offset:])
    except ThorDecompressionError as e:
        raise ThorTableDecompressionError(file_name, table.table_offset) from e

    if actual_compressed_size != table.table_compressed_size:
        _log.warning(
            "Compressed entry table declared as %d bytes, but the stream takes up %d",
            table.table_compressed_size, actual_compressed_size
        )

    return table, read_entry_table(table_data, file_name)
