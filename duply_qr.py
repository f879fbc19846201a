#!/usr/bin/env python3
"""
Duply QR - Paper backup of a duply profile as printable QR codes

This tool exports the minimum needed to restore a duply backup (GPG secret keys,
a minimal configuration and the profile's metadata files), packs it into a tar
archive and prints it as a sequence of QR codes on a PDF document. Before the
document is handed over, every page is rasterized, the codes are read back and
the checksum of the decoded archive is compared with the original.

Only the absolute minimum for a restore is exported: exclude/pre/post files and
comments in the profile configuration are not part of it. It is *strongly*
recommended to make a real test of restore with the output printed, scanned and
decoded back.

REQUIREMENTS:
  Python 3.8+ (extracting with decode --extract needs tarfile filters: 3.12, or 3.8.17+)

  Install Python dependencies with:
    pip install -e .

  System dependencies:
    - duply and bash
    - poppler (pdftoppm, for pdf2image)
    - zbar (libzbar0 on Debian, for pyzbar)

USAGE:
  Create the paper backup of ~/.duply/my_important_data:
    duply-qr create -c 3 my_important_data

  Decode scanned pages back into the archive:
    duply-qr decode scanned_page*.png -o my_important_data.tar.xz

  Inspect a generated PDF:
    duply-qr info my_important_data-duply-profile.pdf

For detailed help on each command:
    duply-qr create --help
    duply-qr decode --help
    duply-qr info --help
"""

import sys
import os
import io
import base64
import contextlib
import fnmatch
import hashlib
import lzma
import shlex
import shutil
import socket
import subprocess
import tarfile
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import click
from qrcode.constants import ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q, ERROR_CORRECT_H
from qrcode.util import BIT_LIMIT_TABLE, MODE_8BIT_BYTE, length_in_bits
import segno
from PIL import Image
from reportlab.lib.pagesizes import A4, LETTER
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as pdf_canvas
import cv2
import numpy as np
from pypdf import PdfReader

VERSION = "1.0.0"

# QR Code error correction mapping
ERROR_CORRECTION_LEVELS = {
    'L': ERROR_CORRECT_L,  # ~7% error correction
    'M': ERROR_CORRECT_M,  # ~15% error correction
    'Q': ERROR_CORRECT_Q,  # ~25% error correction
    'H': ERROR_CORRECT_H,  # ~30% error correction
}

# Symbols are always generated at the highest level
SYMBOL_ERROR_CORRECTION = 'H'

# Structured append can chain at most 16 symbols
MAX_SYMBOLS = 16

DEFAULT_COLUMNS = 2
DEFAULT_SYMBOL_VERSION = 20
DEFAULT_DPI = 300
DEFAULT_DUPLY_HOME = Path.home() / '.duply'

# Page size mapping (points)
PAGE_SIZES = {
    'A4': A4,
    'LETTER': LETTER,
}

# Symbol (and row) height for each column count
ROW_HEIGHTS_MM = {
    1: 130.0,
    2: 80.0,
    3: 60.0,
}

PAGE_MARGIN_MM = 10.0
HEADER_HEIGHT_MM = 10.0
RECIPE_LINE_MM = 3.5
RECIPE_GAP_MM = 6.0

MINIMAL_CONFIG_NAME = 'conf_mini'
PROFILE_CONFIG_NAME = 'conf'

# (role, pattern) pairs matched against the profile's top-level file names
ROLE_PATTERNS = (
    ('minimal-config', MINIMAL_CONFIG_NAME),
    ('secret-key', 'gpgkey.*.sec.asc'),
    ('public-key', 'gpgkey.*.pub.asc'),
    ('metadata', '*.json'),
)

EXPORTED_KEY_PATTERNS = ('gpgkey.*.pub.asc', 'gpgkey.*.sec.asc')

# Variables bash defines by itself while sourcing a file
IGNORED_SHELL_VARIABLES = frozenset({
    '_',
    'BASH_ARGC',
    'BASH_ARGV',
    'BASH_LINENO',
    'BASH_SOURCE',
    'FUNCNAME',
})

REQUIRED_EXECUTABLES = ('duply', 'bash', 'pdftoppm')

XZ_MAGIC = b'\xfd7zXZ\x00'


# ============================================================================
# ERRORS
# ============================================================================

class PaperBackupError(Exception):
    """Base class for every failure the pipeline reports to the operator."""


class UsageError(PaperBackupError):
    """Invalid options or arguments."""


class ProfileNotFoundError(PaperBackupError):
    """The named duply profile directory does not exist."""


class MissingCollaboratorError(PaperBackupError):
    """A required external program or library is not available."""


class ExportError(PaperBackupError):
    """Re-exporting the profile keys or reading its configuration failed."""


class ArchiveBuildError(PaperBackupError):
    """Packaging the profile files failed."""


class CapacityExceededError(PaperBackupError):
    """The archive does not fit into the chosen QR symbol version."""


class RenderError(PaperBackupError):
    """Writing or rasterizing the PDF document failed."""


class SymbolReadError(PaperBackupError):
    """The codes found in an image do not make up one readable archive."""


class IncompleteSequenceError(SymbolReadError):
    """Members of a structured append set are missing or unreadable."""


class VerificationMismatchError(PaperBackupError):
    """The codes read back from the rendered document do not match the archive.

    The composite image the codes were read from is kept at ``preserved_path``
    for inspection.
    """

    def __init__(self, result: 'VerificationResult', preserved_path: Optional[Path]):
        self.result = result
        self.preserved_path = preserved_path
        super().__init__(
            f"Decoded data does not match the original "
            f"(expected {result.expected_checksum}, got {result.actual_checksum}). "
            f"Check the failed output in {preserved_path}."
        )


# ============================================================================
# DATA MODEL
# ============================================================================

@dataclass(frozen=True)
class ProfileFile:
    path: Path
    role: str


@dataclass
class ProfileBundle:
    """Files selected for export from one profile directory."""
    profile: str
    files: List[ProfileFile] = field(default_factory=list)

    def roles(self) -> List[str]:
        return [entry.role for entry in self.files]


@dataclass
class Archive:
    """Archive bytes plus the checksum taken right after they were built."""
    content: bytes
    checksum: str
    compressed: bool
    bundle: ProfileBundle
    algorithm: str = 'sha256'


@dataclass
class EncodedSymbolSequence:
    """One structured append set of QR symbols, in framing order.

    ``payloads`` is the share of the transport text each symbol carries;
    joining them gives back the transport text. ``version`` is the largest
    version any symbol of the set may use.
    """
    payloads: List[str]
    symbols: list
    version: int
    error_correction: str = SYMBOL_ERROR_CORRECTION

    def __len__(self) -> int:
        return len(self.symbols)

    def __iter__(self):
        return iter(self.symbols)

    @property
    def text(self) -> str:
        return ''.join(self.payloads)


@dataclass(frozen=True)
class SymbolPlacement:
    """Position of one symbol, in millimetres from the top-left page corner.

    ``baseline_mm`` is the bottom edge of the symbol.
    """
    index: int
    page: int
    row: int
    column: int
    x_mm: float
    baseline_mm: float
    size_mm: float


@dataclass
class PageLayout:
    columns: int
    row_height_mm: float
    page_size_mm: Tuple[float, float]
    placements: List[SymbolPlacement]
    page_count: int
    title: str
    recipe: List[str]
    recipe_page: int
    recipe_top_mm: float
    margin_mm: float = PAGE_MARGIN_MM
    header_mm: float = HEADER_HEIGHT_MM

    def reading_order(self) -> List[int]:
        """Symbol indices traversed page by page, row by row, left to right."""
        ordered = sorted(self.placements, key=lambda p: (p.page, p.row, p.column))
        return [p.index for p in ordered]

    def placements_on_page(self, page: int) -> List[SymbolPlacement]:
        return [p for p in self.placements if p.page == page]


@dataclass
class VerificationResult:
    passed: bool
    expected_checksum: str
    actual_checksum: str
    composite_path: Optional[Path] = None
    detail: Optional[str] = None


@dataclass
class BackupOptions:
    profile: str
    duply_home: Path = DEFAULT_DUPLY_HOME
    output_dir: Path = Path('.')
    compress: bool = True
    include_public_keys: bool = False
    columns: int = DEFAULT_COLUMNS
    symbol_version: int = DEFAULT_SYMBOL_VERSION
    page_size: str = 'A4'
    dpi: int = DEFAULT_DPI
    checksum_algorithm: str = 'sha256'

    @property
    def output_basename(self) -> str:
        return f"{self.profile}-duply-profile"


@dataclass
class BackupResult:
    output_path: Path
    archive: Archive
    sequence: EncodedSymbolSequence
    layout: PageLayout
    verification: VerificationResult


# ============================================================================
# LIFECYCLE
# ============================================================================

def remove_path(path: Path) -> None:
    """Remove a file or directory tree; a missing target is not an error."""
    path = Path(path)
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        pass


def write_private_file(path: Path, data: bytes) -> Path:
    """Write ``data`` to ``path`` readable by the owner only."""
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(data)
    os.chmod(str(path), 0o600)
    return Path(path)


class Workspace:
    """Private temporary storage for one run.

    Everything created inside ``root`` or passed to :meth:`register` is removed
    when the context exits, whichever way it exits. Artifacts that must outlive
    the run are moved out with :meth:`preserve`.

    Example:
        >>> with Workspace(profile_dir) as workspace:
        ...     tar_path = workspace.path('qr_code.png')
    """

    def __init__(self, parent: Path, prefix: str = '.duply-qr-'):
        self.parent = Path(parent)
        self.prefix = prefix
        self.root: Optional[Path] = None
        self._stack = contextlib.ExitStack()

    def __enter__(self) -> 'Workspace':
        self.root = Path(tempfile.mkdtemp(prefix=self.prefix, dir=str(self.parent)))
        self._stack.callback(remove_path, self.root)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._stack.close()

    def path(self, name: str) -> Path:
        if self.root is None:
            raise RuntimeError("Workspace is not active")
        return self.root / name

    def register(self, path: Path) -> Path:
        """Schedule removal of a path that lives outside the workspace root."""
        self._stack.callback(remove_path, Path(path))
        return Path(path)

    def preserve(self, path: Path, destination: Path) -> Path:
        """Move an artifact out of the workspace so cleanup leaves it alone."""
        shutil.move(str(path), str(destination))
        return Path(destination)


def check_collaborators(executables: Sequence[str] = REQUIRED_EXECUTABLES) -> None:
    """Fail early when an external program or the zbar library is missing.

    Raises:
        MissingCollaboratorError: listing every missing dependency
    """
    missing = [name for name in executables if shutil.which(name) is None]
    try:
        from pyzbar import pyzbar  # noqa: F401
    except ImportError:
        missing.append('zbar')
    if missing:
        raise MissingCollaboratorError(f"Missing dependency: {', '.join(missing)}")


# ============================================================================
# ARCHIVE BUILDER
# ============================================================================

def calculate_checksum(data: bytes, algorithm: str = 'sha256') -> str:
    """Calculate hash checksum of data.

    Args:
        data: Bytes to hash
        algorithm: Hash algorithm (sha256, md5)

    Returns:
        Hex string of hash
    """
    if algorithm == 'sha256':
        return hashlib.sha256(data).hexdigest()
    elif algorithm == 'md5':
        return hashlib.md5(data).hexdigest()
    else:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")


def compress_data(data: bytes, compression: str) -> bytes:
    """Compress data using specified algorithm.

    Args:
        data: Data to compress
        compression: Algorithm - 'none' or 'xz' (same container as ``tar -J``)

    Returns:
        Compressed data (or original if compression='none')
    """
    if compression == 'none':
        return data
    elif compression == 'xz':
        return lzma.compress(data, format=lzma.FORMAT_XZ)
    else:
        raise ValueError(f"Unsupported compression: {compression}")


def decompress_data(data: bytes, compression: str) -> bytes:
    """Decompress data using specified algorithm."""
    if compression == 'none':
        return data
    elif compression == 'xz':
        return lzma.decompress(data, format=lzma.FORMAT_XZ)
    else:
        raise ValueError(f"Unsupported compression: {compression}")


def resolve_profile_dir(duply_home: Path, profile: str) -> Path:
    """Return the directory of a duply profile.

    Raises:
        ProfileNotFoundError: If the profile directory does not exist
    """
    if not profile or os.sep in profile or profile in ('.', '..'):
        raise ProfileNotFoundError(f"Invalid duply profile name: {profile!r}")
    profile_dir = Path(duply_home) / profile
    if not profile_dir.is_dir():
        raise ProfileNotFoundError(f"No such duply profile: {profile} (looked in {profile_dir})")
    return profile_dir


def remove_exported_keys(profile_dir: Path) -> List[Path]:
    """Delete previously exported key files so they are recreated fresh."""
    removed = []
    for entry in sorted(Path(profile_dir).iterdir()):
        if entry.is_file() and any(fnmatch.fnmatchcase(entry.name, p) for p in EXPORTED_KEY_PATTERNS):
            entry.unlink()
            removed.append(entry)
    return removed


class DuplyExporter:
    """Re-exports a profile's GPG keys by running ``duply <profile> status``."""

    def __init__(self, executable: str = 'duply'):
        self.executable = executable

    def export(self, profile: str) -> None:
        try:
            completed = subprocess.run([self.executable, profile, 'status'])
        except OSError as e:
            raise ExportError(f"Could not run {self.executable}: {e}")
        if completed.returncode != 0:
            raise ExportError(
                f"Calling status on profile '{profile}' resulted in an error "
                f"(exit status {completed.returncode})"
            )


_SNAPSHOT_SCRIPT = (
    'set -o posix\n'
    'if [ -n "$1" ]; then . "$1"; fi\n'
    'for __duply_qr_var in $(compgen -v); do\n'
    '  printf "%s\\0%s\\0" "$__duply_qr_var" "${!__duply_qr_var}"\n'
    'done\n'
)


def capture_shell_variables(conf_path: Optional[Path] = None, shell: str = 'bash') -> Dict[str, str]:
    """Snapshot the shell variable namespace, optionally after sourcing a file.

    Args:
        conf_path: Configuration file to source first (None for a bare shell)
        shell: Bash-compatible shell used for the snapshot

    Returns:
        Mapping of variable name to value

    Raises:
        ExportError: If the shell cannot be run or sourcing fails
    """
    source = str(Path(conf_path).resolve()) if conf_path is not None else ''
    try:
        completed = subprocess.run(
            [shell, '-c', _SNAPSHOT_SCRIPT, shell, source],
            stdin=subprocess.DEVNULL,
            capture_output=True,
        )
    except OSError as e:
        raise ExportError(f"Could not run {shell}: {e}")
    if completed.returncode != 0:
        detail = completed.stderr.decode('utf-8', 'replace').strip()
        raise ExportError(f"Sourcing {source or 'an empty environment'} failed: {detail}")

    fields = completed.stdout.split(b'\0')
    variables = {}
    for name, value in zip(fields[0::2], fields[1::2]):
        variables[name.decode('utf-8', 'surrogateescape')] = value.decode('utf-8', 'surrogateescape')
    return variables


def diff_shell_variables(before: Dict[str, str], after: Dict[str, str],
                         ignored: FrozenSet[str] = IGNORED_SHELL_VARIABLES) -> Dict[str, str]:
    """Return the variables that exist only in ``after``.

    Variables that merely changed value are not reported: they were defined by
    the surrounding shell, not by the profile configuration.

    Example:
        >>> diff_shell_variables({'HOME': '/root'}, {'HOME': '/root', 'GPG_KEY': 'ABCD'})
        {'GPG_KEY': 'ABCD'}
    """
    return {name: after[name] for name in sorted(after)
            if name not in before and name not in ignored}


def format_minimal_config(variables: Dict[str, str]) -> str:
    """Render variables as sourceable ``NAME='value'`` lines."""
    return ''.join(f"{name}={shlex.quote(value)}\n" for name, value in sorted(variables.items()))


def select_profile_files(profile_dir: Path, profile: str,
                         include_public_keys: bool = False) -> ProfileBundle:
    """Pick the files of the restore set from the top level of a profile.

    Raises:
        ArchiveBuildError: If the minimal configuration is missing
    """
    bundle = ProfileBundle(profile=profile)
    for entry in sorted(Path(profile_dir).iterdir()):
        if not entry.is_file() or entry.is_symlink():
            continue
        for role, pattern in ROLE_PATTERNS:
            if fnmatch.fnmatchcase(entry.name, pattern):
                if role == 'public-key' and not include_public_keys:
                    break
                bundle.files.append(ProfileFile(entry, role))
                break

    if 'minimal-config' not in bundle.roles():
        raise ArchiveBuildError(f"{MINIMAL_CONFIG_NAME} missing from {profile_dir}")
    return bundle


def _normalize_owner(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    tarinfo.uid = tarinfo.gid = 0
    tarinfo.uname = tarinfo.gname = ''
    return tarinfo


def build_tar(bundle: ProfileBundle, base_dir: Path) -> bytes:
    """Pack the bundle into a tar stream with names relative to ``base_dir``.

    The stream ends right after the end-of-archive marker (like ``tar -b 1``)
    instead of being padded to a full 10 KiB record.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w', format=tarfile.GNU_FORMAT) as tar:
        for entry in bundle.files:
            arcname = entry.path.relative_to(base_dir).as_posix()
            tar.add(str(entry.path), arcname=arcname, recursive=False, filter=_normalize_owner)
        end = tar.offset + 2 * tarfile.BLOCKSIZE
    return buffer.getvalue()[:end]


def build_archive(profile_dir: Path, profile: str, exporter, workspace: Workspace,
                  include_public_keys: bool = False, compress: bool = True,
                  snapshot: Callable[..., Dict[str, str]] = capture_shell_variables,
                  algorithm: str = 'sha256') -> Archive:
    """Export the profile and package its restore set into an Archive.

    Args:
        profile_dir: Directory of the duply profile (inside the duply home)
        profile: Profile name
        exporter: Object with ``export(profile)`` that writes the key files
        workspace: Active workspace owning the temporary files
        include_public_keys: Also pack ``gpgkey.*.pub.asc``
        compress: Compress the tar stream with xz
        snapshot: Shell variable snapshot function
        algorithm: Checksum algorithm

    Returns:
        Archive with its checksum

    Raises:
        ExportError: If exporting keys or reading the configuration fails
        ArchiveBuildError: If packaging fails
    """
    profile_dir = Path(profile_dir)

    click.echo("Removing exported keys to force their recreation...")
    remove_exported_keys(profile_dir)

    click.echo("Calling status to re-export the keys (this may take a while)...")
    exporter.export(profile)

    conf_path = profile_dir / PROFILE_CONFIG_NAME
    if not conf_path.is_file():
        raise ExportError(f"Profile configuration {conf_path} not found")

    click.echo("Sourcing conf file and collecting newly defined variables...")
    variables = diff_shell_variables(snapshot(None), snapshot(conf_path))
    conf_mini = workspace.register(profile_dir / MINIMAL_CONFIG_NAME)
    write_private_file(conf_mini, format_minimal_config(variables).encode('utf-8', 'surrogateescape'))

    click.echo("Generating tarfile...")
    bundle = select_profile_files(profile_dir, profile, include_public_keys)
    try:
        tar_data = build_tar(bundle, base_dir=profile_dir.parent.parent)
    except (OSError, ValueError, tarfile.TarError) as e:
        raise ArchiveBuildError(f"Error generating tar file: {e}")

    content = compress_data(tar_data, 'xz' if compress else 'none')
    checksum = calculate_checksum(content, algorithm)

    for entry in bundle.files:
        click.echo(f"  {entry.role:<15} {entry.path.name}")
    click.echo(f"  Archive size: {len(content):,} bytes ({'xz' if compress else 'uncompressed'})")

    return Archive(content=content, checksum=checksum, compressed=compress,
                   bundle=bundle, algorithm=algorithm)


# ============================================================================
# TRANSPORT ENCODER
# ============================================================================

def encode_transport(data: bytes) -> str:
    """Base64 text without line breaks."""
    return base64.b64encode(data).decode('ascii')


def decode_transport(text: str) -> bytes:
    """Reverse :func:`encode_transport`; raises ``ValueError`` on bad input."""
    return base64.b64decode(text.encode('ascii'), validate=True)


def check_symbol_version(version: int) -> int:
    if not isinstance(version, int) or not 1 <= version <= 40:
        raise UsageError(f"QR symbol version must be between 1 and 40, got {version}")
    return version


# Mode indicator, symbol position, symbol count and parity byte
STRUCTURED_APPEND_HEADER_BITS = 20


class QRSymbolCodec:
    """QR encoder/decoder for structured append sets.

    Text is split over at most ``max_symbols`` codes at error correction level
    H. Every code carries its position and the size of the set in its
    structured append header, so zbar joins the set back together in the
    right order wherever the codes sit on the scanned pages, and reports a set
    with missing members as incomplete.
    """

    error_correction = SYMBOL_ERROR_CORRECTION

    def __init__(self, max_symbols: int = MAX_SYMBOLS, scale: int = 10, border: int = 4):
        self.max_symbols = max_symbols
        self.scale = scale
        self.border = border

    def _capacity(self, version: int, overhead_bits: int) -> int:
        check_symbol_version(version)
        level = ERROR_CORRECTION_LEVELS[self.error_correction]
        header_bits = 4 + length_in_bits(MODE_8BIT_BYTE, version) + overhead_bits
        return (BIT_LIMIT_TABLE[level][version] - header_bits) // 8

    def symbol_capacity(self, version: int) -> int:
        """Characters one stand-alone byte-mode symbol of ``version`` holds at level H."""
        return self._capacity(version, 0)

    def member_capacity(self, version: int) -> int:
        """Characters one member of a structured append set holds."""
        return self._capacity(version, STRUCTURED_APPEND_HEADER_BITS)

    def sequence_capacity(self, version: int) -> int:
        return self.max_symbols * self.member_capacity(version)

    def split(self, text: str, version: int) -> List[str]:
        """Divide text into the shares of the set members.

        The shares differ in length by one character at most, the first ones
        being the longer.

        Raises:
            CapacityExceededError: If the text needs more than ``max_symbols`` codes
        """
        per_symbol = self.member_capacity(version)
        limit = self.max_symbols * per_symbol
        if len(text) > limit:
            raise CapacityExceededError(
                f"Input data too large: {len(text):,} characters, QR version {version} "
                f"holds {limit:,} in {self.max_symbols} codes at level {self.error_correction}. "
                f"Increase the symbol version (-v)."
            )
        count = max(1, -(-len(text) // per_symbol))
        size, extra = divmod(len(text), count)
        return [text[i * size + min(i, extra):(i + 1) * size + min(i + 1, extra)]
                for i in range(count)]

    def encode(self, text: str, version: int) -> EncodedSymbolSequence:
        """Encode text as one structured append set.

        Raises:
            CapacityExceededError: If the text does not fit or the encoder rejects it
        """
        payloads = self.split(text, version)
        symbols = self._make_symbols(text, payloads, version)
        return EncodedSymbolSequence(payloads=payloads, symbols=list(symbols), version=version,
                                     error_correction=self.error_correction)

    def _make_symbols(self, text: str, payloads: List[str], version: int) -> list:
        # segno picks the smallest version that holds each share
        try:
            if len(payloads) == 1:
                symbols = [segno.make(text, error=self.error_correction, mode='byte',
                                      micro=False, boost_error=False)]
            else:
                symbols = list(segno.make_sequence(text, error=self.error_correction, mode='byte',
                                                   boost_error=False, symbol_count=len(payloads)))
        except (segno.DataOverflowError, ValueError) as e:
            raise CapacityExceededError(f"QR encoder rejected the data: {e}. Increase the symbol version (-v).")

        if len(symbols) != len(payloads) or any(s.version > version for s in symbols):
            raise CapacityExceededError(
                f"Data does not fit {len(payloads)} QR codes of version {version}. "
                f"Increase the symbol version (-v)."
            )
        return symbols

    def render(self, symbol) -> Image.Image:
        """Generate the image of one symbol."""
        img_buffer = io.BytesIO()
        symbol.save(img_buffer, kind='png', scale=self.scale, border=self.border)
        img_buffer.seek(0)
        return Image.open(img_buffer).convert('L')

    def decode(self, image: Image.Image) -> List[str]:
        """Find and decode all QR codes in an image.

        zbar joins the members of a structured append set by their headers, so
        each returned string is the whole text of one set (or of one
        stand-alone code), listed top to bottom.

        Raises:
            IncompleteSequenceError: If a set is missing members
        """
        from pyzbar import pyzbar

        array = np.array(image.convert('RGB'))
        gray = cv2.cvtColor(array, cv2.COLOR_RGB2GRAY)
        decoded_objects = pyzbar.decode(gray, symbols=[pyzbar.ZBarSymbol.QRCODE])

        texts = []
        for obj in sorted(decoded_objects, key=lambda o: (o.rect.top, o.rect.left)):
            text = obj.data.decode('utf-8', 'replace')
            # zbar marks missing members with U+FFFD
            if obj.type == 'PARTIAL' or '\ufffd' in text:
                raise IncompleteSequenceError("Some QR codes of the set are missing or unreadable")
            texts.append(text)
        return texts


def read_archive(image: Image.Image, codec: QRSymbolCodec) -> bytes:
    """Decode the single QR code set of an image back into archive bytes.

    Raises:
        SymbolReadError: If no set, several sets or an incomplete set is found,
            or its text is not base64
    """
    texts = codec.decode(image)
    if not texts:
        raise SymbolReadError("No QR codes found")
    if len(texts) > 1:
        raise SymbolReadError(f"Found {len(texts)} separate QR code sets, expected one")
    try:
        return decode_transport(texts[0])
    except ValueError as e:
        raise SymbolReadError(f"Decoded text is not valid base64: {e}")


def encode_archive(archive: Archive, version: int, codec: QRSymbolCodec) -> EncodedSymbolSequence:
    """Turn archive bytes into a structured append set."""
    return codec.encode(encode_transport(archive.content), version)


# ============================================================================
# PAGE LAYOUT
# ============================================================================

def page_size_mm(page_size: str) -> Tuple[float, float]:
    if page_size not in PAGE_SIZES:
        raise UsageError(f"Unsupported page size: {page_size}")
    width, height = PAGE_SIZES[page_size]
    return (width / mm, height / mm)


def document_title(profile: str, hostname: Optional[str] = None) -> str:
    return f"Duply profile data for {profile} on {hostname or socket.gethostname()}"


def decode_recipe(compress: bool, profile: str) -> List[str]:
    """Instructions printed under the codes.

    The tar flags must match the compression used, so the recipe states it.
    """
    if compress:
        compression = "xz (tar flag J)"
        archive_name = f"{profile}.tar.xz"
        tar_flags = "-xvJkf"
    else:
        compression = "no compression (plain tar)"
        archive_name = f"{profile}.tar"
        tar_flags = "-xvkf"

    return [
        "To decode:",
        f" Archive compression: {compression}",
        " * scan all pages into separate PNG files",
        " * montage scanned_page*.png -tile 1x -geometry +0 qr_code.png",
        f" * duply-qr decode qr_code.png -o {archive_name}",
        "   (the codes are read left to right, top to bottom; their text",
        "   joined in that order is base64)",
        f" * tar -C destination {tar_flags} {archive_name}",
        "   (destination will probably be ~, entries start with .duply/)",
        " * rename conf_mini to conf and proceed with restoration (consult duply",
        "   documentation)",
        "",
        " Make sure to do this test at least *once* with a real printout!",
    ]


def layout_symbols(sequence: EncodedSymbolSequence, columns: int, title: str,
                   recipe: List[str], page_size: Tuple[float, float] = None,
                   margin_mm: float = PAGE_MARGIN_MM,
                   header_mm: float = HEADER_HEIGHT_MM) -> PageLayout:
    """Arrange the symbols on pages in reading order.

    A cursor moves down the page by one row height for every symbol in the
    first column. The second and third columns are shifted right by one and two
    row heights and moved back up by one row height, so they sit on the
    baseline of the first column. A row that would cross the bottom margin
    starts a new page.

    Args:
        sequence: Encoded symbols
        columns: Number of columns (1, 2 or 3)
        title: Header printed on every page
        recipe: Decode instructions printed after the last row
        page_size: (width, height) in millimetres, A4 by default

    Returns:
        PageLayout

    Raises:
        UsageError: If the column count is not 1, 2 or 3 or the page is too small
    """
    if columns not in ROW_HEIGHTS_MM:
        raise UsageError("Number of columns may only be 1, 2 or 3")
    if page_size is None:
        page_size = page_size_mm('A4')

    row_height = ROW_HEIGHTS_MM[columns]
    page_width, page_height = page_size
    top = margin_mm + header_mm
    bottom = page_height - margin_mm
    if 2 * margin_mm + columns * row_height > page_width or top + row_height > bottom:
        raise UsageError(f"{columns} column(s) of {row_height:g} mm do not fit on the page")

    placements = []
    page = 0
    row = -1
    cursor = top
    for index in range(len(sequence)):
        column = index % columns
        if column == 0:
            if cursor + row_height > bottom:
                page += 1
                row = -1
                cursor = top
            cursor += row_height
            row += 1
        placements.append(SymbolPlacement(
            index=index,
            page=page,
            row=row,
            column=column,
            x_mm=margin_mm + column * row_height,
            baseline_mm=cursor,
            size_mm=row_height,
        ))

    recipe_page = page
    recipe_top = cursor + RECIPE_GAP_MM if placements else top
    if recipe_top + len(recipe) * RECIPE_LINE_MM > bottom:
        recipe_page = page + 1
        recipe_top = top

    return PageLayout(
        columns=columns,
        row_height_mm=row_height,
        page_size_mm=(page_width, page_height),
        placements=placements,
        page_count=recipe_page + 1,
        title=title,
        recipe=list(recipe),
        recipe_page=recipe_page,
        recipe_top_mm=recipe_top,
        margin_mm=margin_mm,
        header_mm=header_mm,
    )


# ============================================================================
# RENDERING
# ============================================================================

class PdfRenderer:
    """Draws a PageLayout into a PDF with reportlab."""

    font_name = "Courier"
    font_size = 8

    def render(self, layout: PageLayout, images: List[Image.Image], output_path: Path) -> Path:
        if len(images) != len(layout.placements):
            raise ValueError(f"{len(images)} images for {len(layout.placements)} placements")

        page_width = layout.page_size_mm[0] * mm
        page_height = layout.page_size_mm[1] * mm
        margin = layout.margin_mm * mm

        c = pdf_canvas.Canvas(str(output_path), pagesize=(page_width, page_height))
        c.setTitle(layout.title)

        for page_idx in range(layout.page_count):
            c.setFont(self.font_name, self.font_size)
            header_y = page_height - margin - 4 * mm
            c.drawString(margin, header_y, layout.title)
            c.drawRightString(page_width - margin, header_y,
                              f"Page {page_idx + 1} of {layout.page_count}")

            for placement in layout.placements_on_page(page_idx):
                img_buffer = io.BytesIO()
                images[placement.index].save(img_buffer, format='PNG')
                img_buffer.seek(0)

                size = placement.size_mm * mm
                x = placement.x_mm * mm
                y = page_height - placement.baseline_mm * mm
                c.drawImage(ImageReader(img_buffer), x, y, width=size, height=size)

            if page_idx == layout.recipe_page:
                c.setFont(self.font_name, self.font_size)
                y = page_height - (layout.recipe_top_mm + RECIPE_LINE_MM) * mm
                for line in layout.recipe:
                    c.drawString(margin, y, line)
                    y -= RECIPE_LINE_MM * mm

            c.showPage()

        c.save()
        os.chmod(str(output_path), 0o600)
        return Path(output_path)


class PdfRasterizer:
    """Converts PDF pages to PIL images with pdf2image (poppler)."""

    def __init__(self, dpi: int = DEFAULT_DPI):
        self.dpi = dpi

    def rasterize(self, document: Path) -> List[Image.Image]:
        from pdf2image import convert_from_path
        from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError

        try:
            return convert_from_path(str(document), dpi=self.dpi)
        except PDFInfoNotInstalledError as e:
            raise MissingCollaboratorError(f"Missing dependency: poppler ({e})")
        except (PDFPageCountError, PDFSyntaxError, OSError) as e:
            raise RenderError(f"Cannot rasterize {document}: {e}")


def montage(images: Sequence[Image.Image]) -> Image.Image:
    """Stack page images top to bottom with no padding (geometry ``+0``)."""
    if not images:
        raise ValueError("No images to combine")
    width = max(img.width for img in images)
    height = sum(img.height for img in images)
    composite = Image.new('RGB', (width, height), 'white')
    offset = 0
    for img in images:
        composite.paste(img.convert('RGB'), (0, offset))
        offset += img.height
    return composite


def pdf_page_count(pdf_path: Path) -> int:
    return len(PdfReader(str(pdf_path)).pages)


def load_scans(inputs: Sequence[Path], rasterizer: PdfRasterizer) -> List[Image.Image]:
    """Load scanned pages given as image files and/or PDFs, in argument order."""
    pages = []
    for path in inputs:
        path = Path(path)
        if path.suffix.lower() == '.pdf':
            pages.extend(rasterizer.rasterize(path))
        else:
            with Image.open(path) as img:
                pages.append(img.convert('RGB'))
    return pages


# ============================================================================
# VERIFICATION
# ============================================================================

def verify_round_trip(document: Path, expected_checksum: str, rasterizer, codec,
                      workspace: Workspace,
                      compositor: Callable = montage,
                      checksum: Callable[..., str] = calculate_checksum,
                      algorithm: str = 'sha256') -> VerificationResult:
    """Read the rendered document back and compare checksums.

    The pages are rasterized and stacked into one composite image, the same
    way scanned pages are combined for a restore. The composite is saved in
    the workspace so a failure can be inspected.

    Returns:
        VerificationResult (never raises on a mismatch)
    """
    pages = rasterizer.rasterize(document)
    composite = compositor(pages)
    composite_path = workspace.path('qr_code.png')
    composite.save(str(composite_path))

    detail = None
    try:
        actual = checksum(read_archive(composite, codec), algorithm)
    except SymbolReadError as e:
        actual = 'unreadable'
        detail = str(e)

    return VerificationResult(
        passed=actual == expected_checksum,
        expected_checksum=expected_checksum,
        actual_checksum=actual,
        composite_path=composite_path,
        detail=detail,
    )


# ============================================================================
# PIPELINE
# ============================================================================

def validate_options(options: BackupOptions) -> None:
    """Reject bad options before anything touches the filesystem."""
    if options.columns not in ROW_HEIGHTS_MM:
        raise UsageError("Number of columns may only be 1, 2 or 3")
    check_symbol_version(options.symbol_version)
    page_size_mm(options.page_size)
    if options.dpi <= 0:
        raise UsageError(f"Resolution must be positive, got {options.dpi}")
    if not Path(options.output_dir).is_dir():
        raise UsageError(f"Output directory does not exist: {options.output_dir}")


def run_backup(options: BackupOptions, exporter=None, codec=None, renderer=None,
               rasterizer=None, compositor: Callable = montage,
               checksum: Callable[..., str] = calculate_checksum,
               snapshot: Callable[..., Dict[str, str]] = capture_shell_variables) -> BackupResult:
    """Build, encode, lay out, render and verify the paper backup of a profile.

    Every collaborator can be replaced; the defaults run duply, segno,
    reportlab, pdf2image and pyzbar.

    Returns:
        BackupResult for a verified document

    Raises:
        PaperBackupError: subclass matching the failing stage. On
            VerificationMismatchError the rendered PDF and the composite image
            are left on disk.
    """
    validate_options(options)
    profile_dir = resolve_profile_dir(options.duply_home, options.profile)

    exporter = exporter if exporter is not None else DuplyExporter()
    codec = codec if codec is not None else QRSymbolCodec()
    renderer = renderer if renderer is not None else PdfRenderer()
    rasterizer = rasterizer if rasterizer is not None else PdfRasterizer(options.dpi)

    output_dir = Path(options.output_dir)
    output_path = output_dir / f"{options.output_basename}.pdf"

    with Workspace(profile_dir) as workspace:
        archive = build_archive(profile_dir, options.profile, exporter, workspace,
                                include_public_keys=options.include_public_keys,
                                compress=options.compress, snapshot=snapshot,
                                algorithm=options.checksum_algorithm)

        click.echo(f"Converting to base64 and creating a set of QR codes (version {options.symbol_version}, "
                   f"error correction {codec.error_correction})...")
        sequence = encode_archive(archive, options.symbol_version, codec)
        click.echo(f"QR codes required: {len(sequence)}")

        layout = layout_symbols(sequence, options.columns,
                                title=document_title(options.profile),
                                recipe=decode_recipe(options.compress, options.profile),
                                page_size=page_size_mm(options.page_size))
        click.echo(f"Grid Layout: {options.columns} column(s), {layout.page_count} page(s)")

        images = []
        with click.progressbar(sequence.symbols, label='Creating QR codes') as bar:
            for symbol in bar:
                images.append(codec.render(symbol))

        click.echo("Writing PDF...")
        rendered = workspace.path(f"{options.output_basename}.pdf")
        try:
            renderer.render(layout, images, rendered)
        except OSError as e:
            raise RenderError(f"Cannot write PDF: {e}")

        # The PDF stays in the workspace until it has been read back
        click.echo("Reading QR codes back and comparing checksum...")
        result = verify_round_trip(rendered, archive.checksum, rasterizer, codec,
                                   workspace, compositor=compositor, checksum=checksum,
                                   algorithm=archive.algorithm)
        workspace.preserve(rendered, output_path)
        if not result.passed:
            failed_path = workspace.preserve(
                result.composite_path, output_dir / f"{options.output_basename}-failed.png")
            result.composite_path = failed_path
            raise VerificationMismatchError(result, failed_path)

        click.echo(f"OK - {archive.algorithm} sum matches the original ({archive.checksum})")
        result.composite_path = None

    return BackupResult(output_path=output_path, archive=archive, sequence=sequence,
                        layout=layout, verification=result)


# ============================================================================
# CLI COMMANDS
# ============================================================================

CONTEXT_SETTINGS = dict(help_option_names=['-h', '--help'])


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(version=VERSION)
def cli():
    """Duply QR - Paper backup of duply profiles as printable QR codes.

    Exports the keys and minimal configuration of a profile into a PDF of
    QR codes, and decodes scanned pages back into the archive.
    """
    pass


@cli.command()
@click.argument('profile')
@click.option('-C', '--no-compress', is_flag=True,
              help='Disable tar compression (xz is enabled by default)')
@click.option('-V', '--no-viewer', is_flag=True,
              help='Do not open the PDF in a viewer after conversion')
@click.option('-c', '--columns', type=int, default=DEFAULT_COLUMNS,
              help='Number of columns (1, 2 or 3) [default: 2]')
@click.option('-p', '--public-keys', is_flag=True,
              help='Also include public keys (normally derivable from the private key)')
@click.option('-v', '--symbol-version', type=int, default=DEFAULT_SYMBOL_VERSION,
              help='QR symbol version (1..40) [default: 20]. Increase it if the data is too large')
@click.option('--page-size', type=click.Choice(sorted(PAGE_SIZES)), default='A4',
              help='Paper size [default: A4]')
@click.option('--duply-home', type=click.Path(file_okay=False, path_type=Path),
              default=DEFAULT_DUPLY_HOME, envvar='DUPLY_HOME',
              help='Directory holding duply profiles [default: ~/.duply]')
@click.option('-o', '--output-dir', type=click.Path(exists=True, file_okay=False, path_type=Path),
              default=Path('.'), help='Existing directory for the PDF [default: current directory]')
def create(profile, no_compress, no_viewer, columns, public_keys, symbol_version,
           page_size, duply_home, output_dir):
    """Create a PDF with QR codes holding the restore data of a duply profile.

    Directory PROFILE must exist inside the duply home.

    Example:
        duply-qr create -c 3 my_important_data
    """
    options = BackupOptions(
        profile=profile,
        duply_home=duply_home,
        output_dir=output_dir,
        compress=not no_compress,
        include_public_keys=public_keys,
        columns=columns,
        symbol_version=symbol_version,
        page_size=page_size,
    )

    previous_umask = os.umask(0o077)
    try:
        validate_options(options)
        resolve_profile_dir(options.duply_home, options.profile)
        check_collaborators()
        result = run_backup(options)
    except VerificationMismatchError as e:
        click.echo("\nFailed! Decoded data does not match the original.", err=True)
        if e.result.detail:
            click.echo(e.result.detail, err=True)
        click.echo(f"Check the failed output in {e.preserved_path}.", err=True)
        sys.exit(1)
    except PaperBackupError as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"\nUnexpected error: {e}", err=True)
        sys.exit(1)
    finally:
        os.umask(previous_umask)

    if not no_viewer:
        click.echo("Now is the time to send this file to a printer. Do note")
        click.echo("that heavy-duty printers use internal harddrives as cache")
        click.echo("so better avoid those if you care about security.")
        click.launch(str(result.output_path))

    click.echo(f"\nOutput: {result.output_path}")
    click.echo("Don't forget to delete it once you're done with the printing")


@cli.command()
@click.argument('inputs', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('-o', '--output', type=click.Path(dir_okay=False, path_type=Path), required=True,
              help='Output archive path (required)')
@click.option('--extract', 'extract_dir', type=click.Path(file_okay=False, path_type=Path), default=None,
              help='Also unpack the archive into this directory (existing files are kept)')
@click.option('--force', is_flag=True,
              help='Overwrite existing output file')
@click.option('--dpi', type=int, default=DEFAULT_DPI,
              help='Resolution used for PDF inputs [default: 300]')
def decode(inputs, output, extract_dir, force, dpi):
    """Decode scanned pages (images or PDFs) back into the profile archive.

    Pages are combined top to bottom in the order given.

    Example:
        duply-qr decode scanned_page1.png scanned_page2.png -o work.tar.xz
    """
    previous_umask = os.umask(0o077)
    try:
        if output.exists() and not force:
            raise UsageError(f"Output file '{output}' already exists. Use --force to overwrite.")

        click.echo(f"Reading {len(inputs)} input file(s)...")
        pages = load_scans(inputs, PdfRasterizer(dpi))
        data = read_archive(montage(pages), QRSymbolCodec())
        click.echo(f"Successfully decoded the QR code set from {len(pages)} pages")

        write_private_file(output, data)
        click.echo(f"\nRecovered: {output} ({len(data):,} bytes)")
        click.echo(f"Checksum (sha256): {calculate_checksum(data)}")

        if extract_dir is not None:
            extracted = extract_archive(data, extract_dir)
            for name in extracted:
                click.echo(f"  {name}")
            click.echo(f"Extracted {len(extracted)} file(s) into {extract_dir}")
            if any(Path(name).name == MINIMAL_CONFIG_NAME for name in extracted):
                click.echo(f"Rename {MINIMAL_CONFIG_NAME} to {PROFILE_CONFIG_NAME} before using the profile.")
    except PaperBackupError as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"\nUnexpected error: {e}", err=True)
        sys.exit(1)
    finally:
        os.umask(previous_umask)


def archive_compression(data: bytes) -> str:
    return 'xz' if data.startswith(XZ_MAGIC) else 'none'


def extract_archive(data: bytes, destination: Path) -> List[str]:
    """Unpack archive bytes, skipping members that already exist (like ``tar -k``).

    Returns:
        Names of the extracted members
    """
    if not hasattr(tarfile, 'data_filter'):
        raise ArchiveBuildError(
            "Extracting needs a Python with tarfile extraction filters "
            "(3.12, or 3.8.17, 3.9.17, 3.10.12, 3.11.4 and later). Unpack the archive with tar instead."
        )
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    try:
        tar_data = decompress_data(data, archive_compression(data))
        with tarfile.open(fileobj=io.BytesIO(tar_data), mode='r:') as tar:
            members = [m for m in tar.getmembers() if not (destination / m.name).exists()]
            tar.extractall(str(destination), members=members, filter='data')
    except (lzma.LZMAError, tarfile.TarError) as e:
        raise ArchiveBuildError(f"Cannot unpack archive: {e}")
    return [m.name for m in members]


@cli.command()
@click.argument('pdf_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--dpi', type=int, default=DEFAULT_DPI,
              help='Rasterization resolution [default: 300]')
def info(pdf_file, dpi):
    """Display what a duply-qr PDF contains.

    Example:
        duply-qr info work-duply-profile.pdf
    """
    try:
        click.echo(f"\nReading: {pdf_file}")
        pages = PdfRasterizer(dpi).rasterize(pdf_file)
        data = read_archive(montage(pages), QRSymbolCodec())

        compression = archive_compression(data)
        try:
            tar_data = decompress_data(data, compression)
            with tarfile.open(fileobj=io.BytesIO(tar_data), mode='r:') as tar:
                members = tar.getmembers()
        except (lzma.LZMAError, tarfile.TarError) as e:
            raise PaperBackupError(f"Decoded data is not a readable archive: {e}")

        click.echo(f"\n{'='*60}")
        click.echo("DUPLY QR BACKUP")
        click.echo(f"{'='*60}")
        click.echo(f"PDF Pages:           {pdf_page_count(pdf_file)}")
        click.echo(f"Transport Size:      {len(encode_transport(data)):,} characters")
        click.echo(f"Archive Size:        {len(data):,} bytes")
        click.echo(f"Compression:         {compression}")
        click.echo(f"SHA-256:             {calculate_checksum(data)}")
        click.echo("Members:")
        for member in members:
            click.echo(f"  {member.size:>8,}  {member.name}")
        click.echo(f"{'='*60}\n")

    except PaperBackupError as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"\nUnexpected error: {e}", err=True)
        sys.exit(1)


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point; every failure, usage errors included, exits with 1."""
    try:
        return cli.main(args=argv, prog_name='duply-qr', standalone_mode=False) or 0
    except click.UsageError as e:
        e.show()
        return 1
    except click.ClickException as e:
        e.show()
        return 1
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
