#!/usr/bin/env python3
# treecrypt.py
#
# Mirror a directory tree into encrypted copies; originals are never touched.
# Per-file format: salt (16) || IV (16) || AES-256-CBC ciphertext (PKCS7 padded).
# Key: PBKDF2-HMAC-SHA256(password, salt), fresh salt and IV for every file.
#
# Dependencies: stdlib + cryptography

from __future__ import annotations

import argparse
import json
import os
import stat
import sys
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from getpass import getpass
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


# =========================
# Constants / Limits
# =========================

SALT_LEN = 16
IV_LEN = 16
KEY_LEN = 32
HEADER_LEN = SALT_LEN + IV_LEN

DEFAULT_ITERATIONS = 200_000
DEFAULT_MAX_SIZE = 10 * 1024 ** 3  # 10 GiB

DEFAULT_CHUNK_SIZE = 1_048_576
MIN_CHUNK_SIZE = 4096
MAX_CHUNK_SIZE = 16_777_216

LOCK_SUFFIX = ".lock"
WILDCARD = "*"

DEFAULT_INCLUDE = frozenset({WILDCARD})
DEFAULT_EXCLUDE = frozenset({
    ".exe", ".dll", ".sys", ".msi", ".lnk",
    ".bat", ".cmd", ".com", ".ini",
    LOCK_SUFFIX,
})

LOG_PREFIX = "treecrypt_log_"
LOG_TIMESTAMP_FMT = "%Y%m%d_%H%M%S"

CONFIG_KEYS = {
    "source", "out", "password", "iterations", "max_size",
    "include", "exclude", "chunk_size", "dry_run", "quiet",
}


# =========================
# Enums / Data
# =========================

class Disposition(Enum):
    OK = "OK"
    SKIP = "SKIP"
    ERROR = "ERROR"
    DRYRUN = "DRYRUN"


@dataclass(frozen=True)
class FileCandidate:
    path: Path
    size: int
    extension: str  # lower-case, dot-prefixed, or "" when the name has no suffix


@dataclass(frozen=True)
class OutcomeRecord:
    path: Path
    disposition: Disposition
    reason: str
    output_path: Optional[Path] = None


@dataclass(frozen=True)
class RunConfig:
    source_root: Path
    output_root: Path
    password: Union[str, bytes] = field(repr=False)
    iterations: int = DEFAULT_ITERATIONS
    dry_run: bool = False
    max_size: int = DEFAULT_MAX_SIZE
    include: frozenset = DEFAULT_INCLUDE
    exclude: frozenset = DEFAULT_EXCLUDE
    chunk_size: int = DEFAULT_CHUNK_SIZE


# =========================
# Errors
# =========================

class EncryptorError(Exception):
    pass


class ConfigError(EncryptorError):
    pass


class StreamError(EncryptorError):
    pass


class FormatError(EncryptorError):
    pass


# =========================
# Helpers
# =========================

def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def read_exact(f: BinaryIO, n: int) -> bytes:
    if n < 0:
        raise FormatError("Invalid read size.")
    buf = bytearray()
    while len(buf) < n:
        chunk = f.read(n - len(buf))
        if not chunk:
            raise FormatError("Unexpected EOF while reading header.")
        buf += chunk
    return bytes(buf)


def _ensure_chunk_size_ok(chunk_size: int) -> None:
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int):
        raise ConfigError(f"--chunk-size must be an integer, got {chunk_size!r}")
    if not (MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE):
        raise ConfigError(
            f"--chunk-size must be in [{MIN_CHUNK_SIZE} .. {MAX_CHUNK_SIZE}], got {chunk_size}"
        )


# =========================
# Header
# =========================

@dataclass(frozen=True)
class EncryptionHeader:
    """
    Fixed 32-byte prefix of every output file: salt || IV.
    No magic, no version, no tag; the layout is implicit.
    """
    salt: bytes
    iv: bytes

    @staticmethod
    def generate() -> "EncryptionHeader":
        return EncryptionHeader(salt=os.urandom(SALT_LEN), iv=os.urandom(IV_LEN))

    def pack(self) -> bytes:
        if len(self.salt) != SALT_LEN or len(self.iv) != IV_LEN:
            raise EncryptorError("Internal: header salt and IV must be 16 bytes each.")
        return self.salt + self.iv

    @staticmethod
    def parse(data: bytes) -> "EncryptionHeader":
        if len(data) != HEADER_LEN:
            raise FormatError(f"Header must be exactly {HEADER_LEN} bytes, got {len(data)}.")
        return EncryptionHeader(salt=bytes(data[:SALT_LEN]), iv=bytes(data[SALT_LEN:]))


def read_header(f: BinaryIO) -> EncryptionHeader:
    return EncryptionHeader.parse(read_exact(f, HEADER_LEN))


# =========================
# Extension policy
# =========================

def normalize_extension(ext: Optional[str]) -> str:
    e = (ext or "").strip().lower()
    if e == "" or e == WILDCARD:
        return e
    if not e.startswith("."):
        e = "." + e
    return e


def parse_extension_list(value: Union[str, Iterable[str], None]) -> frozenset:
    """
    Build an extension set from "txt, .PDF docx" or any iterable of strings.
    Blank entries are dropped; "*" is kept as the match-anything sentinel.
    """
    if value is None:
        return frozenset()
    items = value.replace(",", " ").split() if isinstance(value, str) else value
    out: set[str] = set()
    for item in items:
        if not isinstance(item, str):
            raise ConfigError(f"Extension entries must be strings, got {item!r}")
        norm = normalize_extension(item)
        if norm:
            out.add(norm)
    return frozenset(out)


def classify(candidate: FileCandidate, config: RunConfig) -> Tuple[bool, str]:
    # First match wins; exclude beats include, wildcard included.
    if candidate.size == 0:
        return False, "zero-length"
    if candidate.size > config.max_size:
        return False, "too-large"
    if candidate.extension in config.exclude:
        return False, "excluded-ext"
    if WILDCARD in config.include:
        return True, "include-all"
    if candidate.extension in config.include:
        return True, "include-match"
    return False, "not-in-include-list"


# =========================
# KDF
# =========================

def validate_iterations(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Iteration count must be a positive integer, got {value!r}")
    if value < 1:
        raise ConfigError(f"Iteration count must be a positive integer, got {value}")
    return value


def derive_key(password: Union[str, bytes], salt: bytes, iterations: int) -> bytes:
    if len(salt) != SALT_LEN:
        raise EncryptorError("Internal: salt must be 16 bytes.")
    iterations = validate_iterations(iterations)
    if isinstance(password, str):
        secret = password.encode("utf-8")
    elif isinstance(password, (bytes, bytearray)):
        secret = bytes(password)
    else:
        raise TypeError("password must be str or bytes")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LEN,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret)


# =========================
# Encrypt
# =========================

def encrypt_stream(
    src: BinaryIO,
    dst: BinaryIO,
    key: bytes,
    header: EncryptionHeader,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """
    Write header || AES-256-CBC(src) to dst, reading src in chunk_size pieces.

    Returns the number of bytes written. I/O failures on either side surface
    as StreamError; whatever reached dst before the failure stays there.
    """
    if len(key) != KEY_LEN:
        raise EncryptorError("Internal: key length must be 32 bytes.")
    _ensure_chunk_size_ok(chunk_size)

    encryptor = Cipher(algorithms.AES(key), modes.CBC(header.iv)).encryptor()
    padder = padding.PKCS7(algorithms.AES.block_size).padder()

    written = 0
    try:
        dst.write(header.pack())
        written += HEADER_LEN

        while True:
            plain = src.read(chunk_size)
            if not plain:
                break
            ct = encryptor.update(padder.update(plain))
            if ct:
                dst.write(ct)
                written += len(ct)

        tail = encryptor.update(padder.finalize()) + encryptor.finalize()
        dst.write(tail)
        written += len(tail)
    except OSError as ex:
        raise StreamError(f"I/O error during encryption: {ex}") from ex

    return written


def encrypt_file(
    in_path: Path,
    out_path: Path,
    password: Union[str, bytes],
    iterations: int = DEFAULT_ITERATIONS,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> EncryptionHeader:
    header = EncryptionHeader.generate()
    key = derive_key(password, header.salt, iterations)
    try:
        with open(in_path, "rb") as in_f, open(out_path, "wb") as out_f:
            encrypt_stream(in_f, out_f, key, header, chunk_size)
    except OSError as ex:
        raise StreamError(f"Failed to encrypt {in_path}: {ex}") from ex
    return header


# =========================
# Traversal
# =========================

def _dir_key(p: Union[str, Path]) -> str:
    return os.path.normcase(os.path.abspath(p))


def iter_candidates(source_root: Path, skip_dirs: Iterable[Path] = ()) -> Iterator[FileCandidate]:
    """
    Yield every regular file under source_root in a stable (sorted) order.

    Entries that cannot be listed or stat'ed are dropped without a trace;
    os.walk swallows listing errors and stat failures are skipped here.
    """
    skip = {_dir_key(p) for p in skip_dirs}
    for dirpath, dirnames, filenames in os.walk(source_root, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if _dir_key(os.path.join(dirpath, d)) not in skip)
        for name in sorted(filenames):
            fp = Path(dirpath) / name
            try:
                st = fp.stat()
            except OSError:
                continue
            if not stat.S_ISREG(st.st_mode):
                continue
            yield FileCandidate(path=fp, size=int(st.st_size), extension=normalize_extension(fp.suffix))


def mirrored_output_path(file_path: Path, source_root: Path, output_root: Path) -> Path:
    full = str(file_path)
    root = str(source_root)
    if full.lower().startswith(root.lower()):
        rel = full[len(root):]
    else:
        rel = os.path.relpath(full, root)
    rel = rel.lstrip(os.sep + (os.altsep or ""))
    return Path(output_root) / (rel + LOCK_SUFFIX)


def process_candidate(candidate: FileCandidate, config: RunConfig) -> OutcomeRecord:
    eligible, reason = classify(candidate, config)
    if not eligible:
        return OutcomeRecord(candidate.path, Disposition.SKIP, reason)

    out_path = mirrored_output_path(candidate.path, config.source_root, config.output_root)
    if config.dry_run:
        return OutcomeRecord(candidate.path, Disposition.DRYRUN, "would-encrypt", out_path)

    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        encrypt_file(candidate.path, out_path, config.password, config.iterations, config.chunk_size)
    except Exception as ex:
        return OutcomeRecord(candidate.path, Disposition.ERROR, f"{type(ex).__name__}: {ex}", out_path)
    return OutcomeRecord(candidate.path, Disposition.OK, "encrypted", out_path)


# =========================
# Run log
# =========================

class RunLog:
    """Append-only record of outcomes, one per discovered file, in discovery order."""

    def __init__(self, started_at: Optional[datetime] = None) -> None:
        self.started_at = started_at or datetime.now()
        self._records: List[OutcomeRecord] = []

    def append(self, record: OutcomeRecord) -> None:
        if not isinstance(record, OutcomeRecord):
            raise TypeError("RunLog only accepts OutcomeRecord entries")
        self._records.append(record)

    @property
    def records(self) -> Tuple[OutcomeRecord, ...]:
        return tuple(self._records)

    def counts(self) -> Counter:
        return Counter(r.disposition for r in self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[OutcomeRecord]:
        return iter(tuple(self._records))


def format_record(record: OutcomeRecord) -> str:
    line = f"{record.disposition.value} [{record.reason}] {record.path}"
    if record.output_path is not None:
        line += f" -> {record.output_path}"
    return line


def log_file_name(started_at: datetime) -> str:
    return f"{LOG_PREFIX}{started_at.strftime(LOG_TIMESTAMP_FMT)}.txt"


def write_run_log(log: RunLog, directory: Path) -> Path:
    path = Path(directory) / log_file_name(log.started_at)
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        for record in log:
            f.write(format_record(record) + "\n")
    return path


def run(
    config: RunConfig,
    log: Optional[RunLog] = None,
    reporter: Optional[Callable[[OutcomeRecord], None]] = None,
) -> RunLog:
    log = log if log is not None else RunLog()
    for candidate in iter_candidates(config.source_root, skip_dirs=(config.output_root,)):
        record = process_candidate(candidate, config)
        log.append(record)
        if reporter is not None:
            reporter(record)
    return log


# =========================
# Configuration
# =========================

def load_config(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as ex:
        raise ConfigError(f"Config file not found: {path}") from ex
    except OSError as ex:
        raise ConfigError(f"Failed to read config file: {path} ({ex})") from ex
    except json.JSONDecodeError as ex:
        raise ConfigError(f"Invalid JSON in config file {path}: {ex}") from ex

    if not isinstance(data, dict):
        raise ConfigError(f"Config file must hold a JSON object: {path}")
    unknown = sorted(set(data) - CONFIG_KEYS)
    if unknown:
        raise ConfigError(f"Unknown config keys in {path}: {', '.join(unknown)}")
    return data


def default_output_root(source_root: Path) -> Path:
    return source_root.parent / f"{source_root.name}_encrypted"


def build_config(
    source: Union[str, Path],
    out: Union[str, Path, None],
    password: Union[str, bytes],
    iterations: int = DEFAULT_ITERATIONS,
    dry_run: bool = False,
    max_size: int = DEFAULT_MAX_SIZE,
    include: Union[str, Iterable[str], None] = DEFAULT_INCLUDE,
    exclude: Union[str, Iterable[str], None] = DEFAULT_EXCLUDE,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> RunConfig:
    raw_source = Path(source).expanduser()
    if not raw_source.exists():
        raise ConfigError(f"Source directory not found: {source}")
    if not raw_source.is_dir():
        raise ConfigError(f"Source path is not a directory: {source}")
    source_root = raw_source.resolve()

    output_root = Path(out).expanduser().resolve() if out else default_output_root(source_root)
    if _dir_key(output_root) == _dir_key(source_root):
        raise ConfigError("Output directory must differ from the source directory.")
    if output_root.exists() and not output_root.is_dir():
        raise ConfigError(f"Output path exists and is not a directory: {output_root}")

    if not isinstance(password, (str, bytes)):
        raise ConfigError("Password must be a string.")
    if len(password) == 0:
        raise ConfigError("Empty password is not allowed.")

    if isinstance(max_size, bool) or not isinstance(max_size, int) or max_size < 0:
        raise ConfigError(f"--max-size must be a non-negative integer, got {max_size!r}")
    _ensure_chunk_size_ok(chunk_size)

    return RunConfig(
        source_root=source_root,
        output_root=output_root,
        password=password,
        iterations=validate_iterations(iterations),
        dry_run=bool(dry_run),
        max_size=max_size,
        include=parse_extension_list(include),
        exclude=parse_extension_list(exclude),
        chunk_size=chunk_size,
    )


def prepare_output_root(config: RunConfig) -> None:
    if config.dry_run:
        return
    try:
        config.output_root.mkdir(parents=True, exist_ok=True)
    except OSError as ex:
        raise ConfigError(f"Failed to create output directory: {config.output_root} ({ex})") from ex


# =========================
# CLI
# =========================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="treecrypt",
        description=(
            "Encrypt every selected file under a source directory into a mirrored tree of\n"
            "'<name>.lock' copies (salt || IV || AES-256-CBC). Originals are left untouched."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    p.add_argument("--source", default=None, help="Source directory to walk (recursive).")
    p.add_argument("--out", default=None, help="Output root (default: '<source>_encrypted' next to the source).")
    p.add_argument("--password", default=None, help="Password string (if omitted, will prompt).")
    p.add_argument(
        "--iterations",
        type=int,
        default=None,
        help=f"PBKDF2-HMAC-SHA256 iteration count (default {DEFAULT_ITERATIONS}).",
    )
    p.add_argument(
        "--max-size",
        type=int,
        default=None,
        help=f"Skip files larger than this many bytes (default {DEFAULT_MAX_SIZE}).",
    )
    p.add_argument(
        "--include",
        default=None,
        help="Comma-separated extensions to encrypt; '*' matches any (default '*').",
    )
    p.add_argument(
        "--exclude",
        default=None,
        help=(
            "Comma-separated extensions to never encrypt; wins over --include.\n"
            f"Default: {','.join(sorted(DEFAULT_EXCLUDE))}"
        ),
    )
    p.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help=f"Read size in bytes (default {DEFAULT_CHUNK_SIZE}). Range [{MIN_CHUNK_SIZE}..{MAX_CHUNK_SIZE}].",
    )
    p.add_argument("--dry-run", action="store_true", help="Classify and log only; write no output files.")
    p.add_argument("--quiet", action="store_true", help="Do not print a line per file.")
    p.add_argument("--config", default=None, help="Optional JSON config file (flags override it).")
    return p


def print_summary(log: RunLog) -> None:
    counts = log.counts()
    print(
        f"Done. Total: {len(log)} | OK: {counts[Disposition.OK]} | Skipped: {counts[Disposition.SKIP]}"
        f" | Errors: {counts[Disposition.ERROR]} | Dry-run: {counts[Disposition.DRYRUN]}"
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    file_cfg = load_config(Path(args.config)) if args.config is not None else {}

    def pick(name: str, default: Any = None) -> Any:
        value = getattr(args, name)
        return value if value is not None else file_cfg.get(name, default)

    source = pick("source")
    if not source:
        raise ConfigError("--source is required (or set 'source' in the config file).")

    password = pick("password")
    if password is None:
        password = getpass("Password: ")

    config = build_config(
        source=source,
        out=pick("out"),
        password=password,
        iterations=pick("iterations", DEFAULT_ITERATIONS),
        dry_run=bool(args.dry_run or file_cfg.get("dry_run", False)),
        max_size=pick("max_size", DEFAULT_MAX_SIZE),
        include=pick("include", DEFAULT_INCLUDE),
        exclude=pick("exclude", DEFAULT_EXCLUDE),
        chunk_size=pick("chunk_size", DEFAULT_CHUNK_SIZE),
    )
    quiet = bool(args.quiet or file_cfg.get("quiet", False))

    prepare_output_root(config)

    mode = " (dry run)" if config.dry_run else ""
    print(f"Encrypting: {config.source_root} -> {config.output_root}{mode}")

    log = RunLog()
    run(config, log=log, reporter=None if quiet else (lambda record: print(format_record(record))))
    print_summary(log)

    log_dir = config.output_root if config.output_root.is_dir() else Path.cwd()
    try:
        log_path = write_run_log(log, log_dir)
    except OSError as ex:
        eprint(f"Warning: failed to write run log to {log_dir}: {ex}")
    else:
        print(f"Log: {log_path}")
    return 0


def cli() -> None:
    try:
        raise SystemExit(main())
    except EncryptorError as ex:
        eprint(f"Error: {ex}")
        raise SystemExit(2)
    except KeyboardInterrupt:
        eprint("Interrupted.")
        raise SystemExit(130)


if __name__ == "__main__":
    cli()
