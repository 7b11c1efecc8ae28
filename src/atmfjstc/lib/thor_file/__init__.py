"""
This package provides a read-only interface for THOR patch archives (analogous to TarFile, GZFile etc.)

A THOR archive bundles a set of files, and possibly deletion markers for files, meant to be applied later to a target
data store (named in the archive header, or the implicit default store if the name is empty). Archives come in two
layouts, selected by a mode field in the header:

- Single-file: exactly one entry, whose compressed content directly follows its record
- Multiple-files: a zlib-compressed table of entries, each pointing to a compressed content block elsewhere in the file,
  or marking a path for deletion

The main class of interest is `ThorFile`. We can open an archive like so::

    thor_file = ThorFile('path/to/patch.thor')

and obtain all the entries as `ThorEntry` objects::

    for entry in thor_file:
        print(entry)

to read the content of an entry, we can use::

    data = thor_file.read_file_content('data\\\\texture\\\\icon.bmp')

More details are available in the `ThorFile` and `ThorEntry` docs.
"""

import logging

from dataclasses import dataclass
from enum import IntEnum, IntFlag
from io import IOBase, BytesIO
from os import PathLike, SEEK_SET
from typing import ContextManager, BinaryIO, AnyStr, Union, Optional, Tuple, Mapping, Iterator

from atmfjstc.lib.binary_utils.BinaryReader import BinaryReader, BinaryReaderFormatError


__version__ = '1.0.0'


THOR_MAGIC = b'ASSF (C) 2007 Aeomin DEV'

PATH_ENCODING = 'cp1252'
"""
Single-byte codepage used for entry paths and the target store name. The five bytes the codec leaves undefined (0x81,
0x8D, 0x8F, 0x90, 0x9D) decode to the C1 control characters with the same code, as in the WHATWG windows-1252 variant.
"""


_log = logging.getLogger(__name__)


class ThorFile(ContextManager['ThorFile']):
    """
    This class provides access to a THOR patch archive stored in a file or file object.

    A `ThorFile` reads and parses the whole archive index as soon as it is constructed. Afterwards, data about the
    archive is available through the `header`, `file_count`, `target_store_name` etc. properties, and entries can be
    listed or looked up by path via `list_entries` and `get_entry`. The index never changes after it has been loaded.

    The content of an entry is not kept in memory. Each call to `read_file_content` (or `open`) seeks the underlying
    file object to the entry's data and decompresses it anew.

    A `ThorFile` can be either opened and closed manually::

        thf = ThorFile("patch.thor")
        print(thf.list_entries())
        thf.close()

    or used as a context manager::

        with ThorFile("patch.thor") as thf:
            print(thf.list_entries())

    This class does not offer functionality for writing THOR archives.
    """

    _fileobj: Optional[BinaryIO] = None
    _fileobj_owned: bool = False

    _container: 'ThorContainer'

    def __init__(self, path_or_fileobj: Union[PathLike, AnyStr, BinaryIO]):
        """
        Opens a THOR archive for reading.

        Args:
            path_or_fileobj: Either a filename, or an open, seekable, binary file object containing the archive.

        Raises:
            NotAThorFileError: If the data does not start with the THOR signature
            BadThorFileError: (or a subclass thereof) If the file has the THOR signature, but its structure is corrupt
                or incorrect

        There are several caveats if a file object is passed:

        - The archive always starts at offset 0 of the file object, regardless of its current position, as the entry
          offsets stored inside are absolute.
        - The data in the file object should not be changed during the lifetime of the `ThorFile`.
        - The file object should be kept open for the lifetime of the `ThorFile` if we need to read the contents of the
          entries.
        - The `ThorFile` will not close the file object itself when the context ends.
        """

        if isinstance(path_or_fileobj, IOBase):
            if not path_or_fileobj.seekable():
                raise ValueError("File object must be seekable")

            self._fileobj = path_or_fileobj
        else:
            self._fileobj = open(path_or_fileobj, 'rb')
            self._fileobj_owned = True

        try:
            self._container = self._read_archive()
        except BaseException:
            if self._fileobj_owned:
                self._fileobj.close()
            raise

    @property
    def container(self) -> 'ThorContainer':
        """
        The fully parsed archive index: header, table descriptor and entries.
        """
        return self._container

    @property
    def header(self) -> 'ThorHeader':
        return self._container.header

    @property
    def mode(self) -> 'ThorMode':
        return self._container.header.mode

    @property
    def file_count(self) -> int:
        """
        The number of files, as declared in the archive header.
        """
        return self._container.header.file_count

    @property
    def target_store_name(self) -> str:
        """
        The name of the data store the patch should be applied to. An empty string means the default store.
        """
        return self._container.header.target_store_name

    @property
    def merge_into_base_store(self) -> bool:
        return self._container.header.merge_into_base_store

    @property
    def entries(self) -> Tuple['ThorEntry', ...]:
        """
        All the entries in the archive. The order is not significant.
        """
        return tuple(self._container.entries.values())

    def list_entries(self) -> Tuple['ThorEntry', ...]:
        return self.entries

    def get_entry(self, path: str) -> Optional['ThorEntry']:
        """
        Looks up an entry by its exact relative path (case-sensitive, no normalization). Returns None if there is no
        such entry.
        """
        return self._container.entries.get(path)

    def __iter__(self) -> Iterator['ThorEntry']:
        return iter(self.entries)

    def __contains__(self, path: object) -> bool:
        return path in self._container.entries

    def read_file_content(self, path: str) -> bytes:
        """
        Reads and decompresses the content of an entry.

        The archive must still be open for this to work. Nothing is cached: every call reads the data again from the
        underlying file object.

        Args:
            path: The exact relative path of the entry.

        Returns:
            The decompressed content, as a `bytes` object.

        Raises:
            ThorEntryNotFoundError: If there is no entry with this path.
            ThorEntryRemovedError: If the entry is a deletion marker, and thus has no content at all.
            ThorEntryInvalidSizeError: If the entry declares a negative compressed size.
            ThorEntrySeekError: If the underlying file object could not be positioned at the entry data.
            ThorEntryShortReadError: If the file ends before the whole compressed data could be read.
            ThorEntryDecompressionError: If the compressed data is corrupt.

        Any of these errors only concerns the entry in question. The `ThorFile` remains usable afterwards.

        Warning: do not read entries from multiple threads simultaneously, as they share the file object.
        """
        from ._parse import inflate

        entry = self.get_entry(path)
        if entry is None:
            raise ThorEntryNotFoundError(path)
        if entry.is_removed:
            raise ThorEntryRemovedError(path)
        if entry.size_compressed < 0:
            raise ThorEntryInvalidSizeError(path, entry.size_compressed)

        if self._fileobj.closed:
            raise ValueError("Cannot read entries because the underlying file object has been closed")

        reader = BinaryReader(self._fileobj, big_endian=False)

        try:
            reader.seek(entry.offset, SEEK_SET)
        except (OSError, ValueError) as e:
            raise ThorEntrySeekError(path, entry.offset) from e

        try:
            compressed_data = reader.read_amount(entry.size_compressed, 'compressed entry content')
        except BinaryReaderFormatError as e:
            raise ThorEntryShortReadError(path, entry.offset, entry.size_compressed) from e

        try:
            content, _ = inflate(compressed_data)
        except ThorDecompressionError as e:
            raise ThorEntryDecompressionError(path) from e

        if len(content) != entry.size_decompressed:
            _log.warning(
                "Entry '%s' decompressed to %d bytes, but %d were declared",
                path, len(content), entry.size_decompressed
            )

        return content

    def open(self, path_or_entry: Union[str, 'ThorEntry']) -> BytesIO:
        """
        Opens the content of an entry for perusal.

        Args:
            path_or_entry: Either the relative path of an entry, or a `ThorEntry` obtained from this archive.

        Returns:
            An in-memory binary file object. If you need text access, wrap it in a `TextIOWrapper`.

        Raises the same errors as `read_file_content`.
        """

        if isinstance(path_or_entry, ThorEntry):
            if self.get_entry(path_or_entry.relative_path) != path_or_entry:
                raise ValueError("Entry does not belong to this THOR file!")

            path_or_entry = path_or_entry.relative_path

        return BytesIO(self.read_file_content(path_or_entry))

    def close(self):
        """
        Closes the underlying file object.

        Once the file is closed, you can still read the metadata for the entries, but you won't be able to read their
        contents.

        Note that this method closes the file object regardless of whether it was created by `ThorFile` or received
        from elsewhere!
        """

        if self._fileobj is not None:
            self._fileobj.close()

    def __enter__(self) -> 'ThorFile':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if (not self._fileobj_owned) or (self._fileobj is None) or self._fileobj.closed:
            return

        self._fileobj.close()

    def _read_archive(self) -> 'ThorContainer':
        reader = BinaryReader(self._fileobj, big_endian=False)
        reader.seek(0, SEEK_SET)

        file_name = reader.name()
        if isinstance(file_name, bytes):
            file_name = file_name.decode(errors='replace')

        return parse_thor_container(self._fileobj.read(), file_name)


def parse_thor_container(data: bytes, file_name: Optional[str] = None) -> 'ThorContainer':
    """
    Parses the index of a THOR archive held entirely in memory.

    This performs no I/O of its own. The entry contents are not decompressed, only located.

    Args:
        data: The complete archive data.
        file_name: The name of the archive, if any. It is only used in the text of any exceptions that may be thrown.

    Returns:
        A `ThorContainer` with the header, table descriptor and entries.

    Raises:
        BadThorFileError: (or a subclass thereof) If the data is not a valid THOR archive.
    """
    from ._parse import parse_thor_container

    return parse_thor_container(data, file_name)


class ThorMode(IntEnum):
    SINGLE_FILE = 33
    MULTIPLE_FILES = 48


class ThorEntryFlags(IntFlag):
    REMOVED = 1


@dataclass(frozen=True)
class ThorHeader:
    """
    The fixed-format header at the start of every THOR archive.

    Attributes:
        merge_into_base_store: Whether the files should be merged into the target store itself (as opposed to being
            placed beside it, in the client directory).
        file_count: The number of files declared by the archive.
        mode: A `ThorMode` enum specifying the layout of the rest of the archive.
        target_store_name: The name of the store the archive is meant for. Empty means the default store.
    """

    merge_into_base_store: bool
    file_count: int
    mode: ThorMode
    target_store_name: str


@dataclass(frozen=True)
class ThorTableDescriptor:
    pass


@dataclass(frozen=True)
class SingleFileTableDesc(ThorTableDescriptor):
    """
    Table descriptor for single-file archives. It holds nothing, as the lone entry follows it directly.
    """


@dataclass(frozen=True)
class MultipleFilesTableDesc(ThorTableDescriptor):
    """
    Table descriptor for multiple-files archives.

    Attributes:
        table_compressed_size: The declared size of the compressed entry table.
        table_offset: The offset of the compressed entry table, from the start of the archive, as stored.
        rebased_table_offset: The offset of the compressed entry table relative to the end of this descriptor. It is
            filled in once the descriptor has been placed within the archive.
    """

    table_compressed_size: int
    table_offset: int
    rebased_table_offset: Optional[int] = None


@dataclass(frozen=True)
class ThorEntry:
    """
    Metadata for an entry in a THOR archive.

    Note that objects of this type are just inert data containers. They can be copied from their originating `ThorFile`
    object and are unaffected by its closure.

    Attributes:
        size_compressed: The size of the compressed content, in bytes.
        size_decompressed: The declared size of the content once decompressed, in bytes.
        relative_path: The path of the file within the target store. It identifies the entry and is used verbatim.
        is_removed: If True, the entry is a deletion marker: the path should be removed from the target store. Such
            entries have no content, and their sizes and offset are all 0 without this representing real data.
        offset: The absolute position in the archive at which the compressed content begins.
    """

    size_compressed: int
    size_decompressed: int
    relative_path: str
    is_removed: bool = False
    offset: int = 0

    @property
    def has_content(self) -> bool:
        return not self.is_removed


@dataclass(frozen=True)
class ThorContainer:
    """
    The complete parsed index of a THOR archive. The `entries` mapping is keyed by relative path and is read-only.
    """

    header: ThorHeader
    table: ThorTableDescriptor
    entries: Mapping[str, ThorEntry]


class ThorFileError(Exception):
    pass


class ThorDecompressionError(ThorFileError):
    """
    Raised when a zlib stream (either the entry table or the content of an entry) is corrupt or truncated.
    """


class BadThorFileError(ThorFileError):
    """
    Base class for all errors that prevent an archive from being opened at all.
    """

    file_name: Optional[str]

    def __init__(self, file_name: Optional[str], message: str):
        self.file_name = file_name

        quoted_name = f" '{file_name}'" if file_name is not None else ''
        super().__init__(f"THOR file{quoted_name} {message}")


class NotAThorFileError(BadThorFileError):
    def __init__(self, file_name: Optional[str]):
        super().__init__(file_name, "is not a THOR archive (signature mismatch)")


class ThorInvalidModeError(BadThorFileError):
    raw_mode: int

    def __init__(self, file_name: Optional[str], raw_mode: int):
        self.raw_mode = raw_mode
        super().__init__(file_name, f"has an unknown archive mode ({raw_mode})")


class ThorInvalidFileCountError(BadThorFileError):
    def __init__(self, file_name: Optional[str], raw_count: int):
        super().__init__(file_name, f"has an invalid file count ({raw_count})")


class ThorTableOffsetUnderflowError(BadThorFileError):
    table_offset: int
    consumed: int

    def __init__(self, file_name: Optional[str], table_offset: int, consumed: int):
        self.table_offset = table_offset
        self.consumed = consumed

        super().__init__(
            file_name, f"declares its entry table at offset {table_offset}, inside the first {consumed} bytes that "
            f"precede it"
        )


class ThorTableDecompressionError(BadThorFileError, ThorDecompressionError):
    def __init__(self, file_name: Optional[str], table_offset: int):
        super().__init__(file_name, f"has a corrupt compressed entry table at offset {table_offset}")


class ThorPathDecodingError(BadThorFileError):
    raw_value: bytes

    def __init__(self, file_name: Optional[str], meaning: str, raw_value: bytes):
        self.raw_value = raw_value
        super().__init__(file_name, f"has an invalid {meaning} (not {PATH_ENCODING}): 0x{raw_value.hex()}")


class ThorTruncatedInputError(BadThorFileError):
    def __init__(self, file_name: Optional[str]):
        super().__init__(file_name, "ends prematurely")


class ThorUnparseableEntryTableError(BadThorFileError):
    def __init__(self, file_name: Optional[str], detail: str):
        super().__init__(file_name, f"has a malformed entry table: {detail}")


class ThorEntryError(ThorFileError):
    """
    Base class for errors concerning the content of a single entry. These do not affect the rest of the archive.
    """

    path: str

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Entry '{path}' {message}")


class ThorEntryNotFoundError(ThorEntryError):
    def __init__(self, path: str):
        super().__init__(path, "does not exist in the archive")


class ThorEntryRemovedError(ThorEntryError):
    def __init__(self, path: str):
        super().__init__(path, "is a deletion marker and has no content")


class ThorEntrySeekError(ThorEntryError):
    def __init__(self, path: str, offset: int):
        super().__init__(path, f"could not be located at offset {offset}")


class ThorEntryInvalidSizeError(ThorEntryError):
    def __init__(self, path: str, size_compressed: int):
        super().__init__(path, f"declares an invalid compressed size ({size_compressed})")


class ThorEntryShortReadError(ThorEntryError):
    def __init__(self, path: str, offset: int, expected_length: int):
        super().__init__(path, f"should have {expected_length} bytes of data at offset {offset}, but the file ends")


class ThorEntryDecompressionError(ThorEntryError, ThorDecompressionError):
    def __init__(self, path: str):
        super().__init__(path, "has corrupt compressed content")
