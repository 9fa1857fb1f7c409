#!/usr/bin/env python3
"""releasesign - sign and notarize release artifacts.

This module provides tools for:
1. Signing macOS artifacts (.app bundles, .pkg installers, .dmg images and
   loose Mach-O binaries) with a Developer ID certificate imported into a
   scoped build keychain, signing nested bundle contents inside-out
2. Notarizing and stapling the signed artifacts with notarytool
3. Signing Windows binaries and JAR files with Jsign through Azure Key Vault

Signing, timestamping and notarization are delegated to the platform tools
(codesign, security, notarytool, stapler, ditto, jsign, jarsigner). This
module discovers what to sign, decides the order, and makes sure credential
material never outlives a run.

Usage (CLI):
    # Sign (and notarize, when NOTARIZATION_* is set) everything under dist/
    releasesign macos dist/

    # Show the signing plan without touching anything
    releasesign macos dist/MyApp.app --dry-run

    # Sign Windows binaries and JARs with Jsign
    releasesign jsign dist/windows/

Usage (API):
    from releasesign import (
        NotarizationCoordinator, NotarizationCredentials,
        SigningCredentials, SigningOrchestrator, discover,
    )

    for artifact in discover("dist/MyApp.app"):
        print(artifact.kind.value, artifact.path)

    signed = SigningOrchestrator(SigningCredentials.from_env()).run("dist")
"""

import argparse
import base64
import binascii
import contextlib
import dataclasses
import datetime
import enum
import itertools
import logging
import os
import re
import secrets
import stat
import struct
import subprocess
import sys
import tempfile
import threading
import time
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path

from macholib.util import is_platform_file

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Environment variable names (macOS signing)
ENV_SIGNING_IDENTITY = "MACOS_SIGNING_IDENTITY"
ENV_CERTIFICATE = "MACOS_CERTIFICATE"
ENV_CERTIFICATE_FILE = "MACOS_CERTIFICATE_FILE"
ENV_CERTIFICATE_PWD = "MACOS_CERTIFICATE_PWD"
ENV_KEYCHAIN_PASSWORD = "KEYCHAIN_PASSWORD"
ENV_ENTITLEMENTS = "MACOS_ENTITLEMENTS"

# Alternative names used by other signing setups for the same secrets
ENV_ALIASES = {
    ENV_SIGNING_IDENTITY: "MACOS_CS_IDENTITY_ID",
    ENV_CERTIFICATE: "MACOS_CS_CERTIFICATE",
    ENV_CERTIFICATE_PWD: "MACOS_CS_CERTIFICATE_PWD",
    ENV_KEYCHAIN_PASSWORD: "MACOS_CS_KEYCHAIN_PWD",
}

# Environment variable names (notarization)
ENV_NOTARY_USERNAME = "NOTARIZATION_USERNAME"
ENV_NOTARY_TEAM_ID = "NOTARIZATION_TEAM_ID"
ENV_NOTARY_PASSWORD = "NOTARIZATION_PASSWORD"

# Environment variable names (Jsign)
ENV_JSIGN_JAR = "JSIGN_JAR"
ENV_AZURE_TOKEN = "AZURE_TOKEN"
ENV_KEYVAULT_URI = "KEYVAULT_URI"
ENV_CERT_NAME = "CERT_NAME"
ENV_DIGEST_ALG = "DIGEST_ALG"
ENV_CERT_CHAIN = "CERT_CHAIN"

# Variables removed from the environment once read, so that child
# processes never inherit them
SECRET_ENV_VARS = (
    ENV_CERTIFICATE,
    ENV_CERTIFICATE_PWD,
    ENV_KEYCHAIN_PASSWORD,
    ENV_NOTARY_PASSWORD,
    *ENV_ALIASES.values(),
)

# Preferred parent directory for credential files on CI runners
ENV_RUNNER_TEMP = "RUNNER_TEMP"

# Keychain and notarytool profile names
DEFAULT_KEYCHAIN = "build.keychain"
DEFAULT_NOTARY_KEYCHAIN = "notary.keychain"
DEFAULT_NOTARY_PROFILE = "release-sign-notarytool-profile"

# Applications allowed to use the imported signing key without prompting
KEYCHAIN_TRUSTED_APPS = ["/usr/bin/codesign", "/usr/bin/security"]
KEY_PARTITION_LIST = "apple-tool:,apple:,codesign:"

# Jsign defaults
DEFAULT_DIGEST_ALG = "SHA-256"
DEFAULT_TSA_URL = "http://timestamp.digicert.com"
DEFAULT_TS_RETRIES = 3
DEFAULT_TS_RETRY_WAIT = 10

WINDOWS_EXTENSIONS = [".exe", ".dll", ".cat", ".sys", ".msi", ".ps1"]
JAR_EXTENSION = ".jar"

# Minimum plausible size of a PKCS#12 container
PKCS12_MIN_SIZE = 12
# PKCS#12 is ASN.1 DER and starts with a SEQUENCE tag
ASN1_SEQUENCE_TAG = 0x30

UTF8_BOM = b"\xef\xbb\xbf"
BASE64_NOISE = re.compile(rb"[^A-Za-z0-9+/=]")
BASE64_TEXT = re.compile(rb"^[A-Za-z0-9+/=\s]*$")

# notarytool output, e.g. "  id: 2efe2717-..." and "  status: Accepted"
NOTARY_ID_PATTERN = re.compile(r"^\s*id:\s*(\S+)", re.MULTILINE)
NOTARY_STATUS_PATTERN = re.compile(r"^\s*status:\s*(.+?)\s*$", re.MULTILINE)
NOTARY_ACCEPTED = "Accepted"

# Execute permission for owner, group or other
EXECUTE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH

# ----------------------------------------------------------------------------
# Optional dotenv support


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .releasesign.toml in current directory
    3. releasesign.toml in current directory

    Secrets (certificates, passwords, tokens) are never read from the
    config file; they come from the environment only.

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Example .releasesign.toml:
        [macos]
        entitlements = "entitlements.plist"
        keychain = "build.keychain"

        [jsign]
        digest_alg = "SHA-384"
        ts_retries = 5
    """
    try:
        import tomllib
    except ImportError:
        try:
            import tomli as tomllib  # type: ignore[import-not-found]
        except ImportError:
            return {}

    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".releasesign.toml",
            cwd / "releasesign.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError):
                continue

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Numbers are returned as strings so callers convert them where needed.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "macos", "jsign")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return default


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config(config_path: Path | None = None) -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if config_path is not None:
        _config = load_config(config_path)
    elif _config is None:
        _config = load_config()
    return _config


def getenv(name: str, environ: Mapping[str, str] | None = None) -> str | None:
    """Read an environment variable, falling back to its alias.

    Empty values are treated as unset.
    """
    if environ is None:
        environ = os.environ
    value = environ.get(name)
    if not value and name in ENV_ALIASES:
        value = environ.get(ENV_ALIASES[name])
    return value or None


# ----------------------------------------------------------------------------
# Error handling


class ReleaseSignError(Exception):
    """Base exception class for releasesign errors."""


class CommandError(ReleaseSignError):
    """Exception raised when a command fails."""

    def __init__(
        self,
        command: str,
        returncode: int,
        output: str | None = None,
        stdout: str | None = None,
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        self.stdout = stdout
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class ConfigurationError(ReleaseSignError):
    """Exception raised when required input is missing or invalid."""


class InvalidCredentialError(ReleaseSignError):
    """Exception raised when certificate material cannot be decoded."""


class CredentialImportError(ReleaseSignError):
    """Exception raised when the keychain rejects the certificate."""


class CodesignError(ReleaseSignError):
    """Exception raised when codesigning fails."""


class VerificationError(ReleaseSignError):
    """Exception raised when a signature fails verification."""


class NotarizationError(ReleaseSignError):
    """Exception raised when notarization or stapling fails.

    The notarization tool's exit status is kept so that it can be
    propagated as the process exit status.
    """

    def __init__(self, message: str, returncode: int = 1):
        self.returncode = returncode if returncode > 0 else 1
        super().__init__(message)


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """A simple terminal spinner for long-running operations.

    Example:
        with ProgressSpinner("Waiting for notarization"):
            time.sleep(5)
    """

    SPINNER_CHARS = ["|", "/", "-", "\\"]

    def __init__(self, message: str = ""):
        self.message = message
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _spin(self) -> None:
        spinner = itertools.cycle(self.SPINNER_CHARS)
        while not self._stop_event.is_set():
            sys.stdout.write(f"\r{self.message} {next(spinner)} ")
            sys.stdout.flush()
            time.sleep(0.1)
        sys.stdout.write(f"\r{self.message} done\n")
        sys.stdout.flush()

    def start(self) -> None:
        """Start the spinner."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the spinner."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)

    def __enter__(self) -> "ProgressSpinner":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = True, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def mask_secrets(text: str, hidden: Sequence[str | None] = ()) -> str:
    """Replace every non-empty secret in text with asterisks."""
    for secret in hidden:
        if secret:
            text = text.replace(secret, "****")
    return text


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    input: str | None = None,
    hidden: Sequence[str | None] = (),
) -> str:
    """Run a command and return its output.

    This is the single command execution utility used throughout the
    module. Uses shell=False; secrets listed in ``hidden`` are masked in
    logged command lines and in error messages.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        input: Optional text piped to the command's stdin
        hidden: Secret values to mask in logs

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails
    """
    cmd_str = mask_secrets(" ".join(command), hidden)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command,
            shell=False,
            check=True,
            text=True,
            capture_output=True,
            input=input,
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        output = mask_secrets(e.stderr or e.stdout or "", hidden)
        raise CommandError(
            cmd_str, e.returncode, output or None, e.stdout
        ) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


# ----------------------------------------------------------------------------
# Credential material on disk


def secret_dir() -> Path | None:
    """Directory for credential files: RUNNER_TEMP on CI, else TMPDIR."""
    runner_temp = os.environ.get(ENV_RUNNER_TEMP)
    if runner_temp and Path(runner_temp).is_dir():
        return Path(runner_temp)
    return None


class SecretFile:
    """A temporary file holding credential material.

    The file is created with mode 0600 and, on exit, overwritten with
    zeros and removed, whether or not the block raised.

    Example:
        with SecretFile(p12_bytes, prefix="cert.") as path:
            keychain.import_certificate(path, passphrase)
    """

    def __init__(
        self,
        data: bytes,
        prefix: str = "secret.",
        suffix: str = "",
        directory: Pathlike | None = None,
    ):
        self.data = data
        self.prefix = prefix
        self.suffix = suffix
        self.directory = directory if directory is not None else secret_dir()
        self.path: Path | None = None

    def __enter__(self) -> Path:
        fd, name = tempfile.mkstemp(
            prefix=self.prefix, suffix=self.suffix, dir=self.directory
        )
        self.path = Path(name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(self.data)
        except BaseException:
            self.wipe()
            raise
        return self.path

    def __exit__(self, *args: object) -> None:
        self.wipe()

    def wipe(self) -> None:
        """Overwrite the file with zeros and remove it."""
        if self.path is None:
            return
        path, self.path = self.path, None
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return
        if size:
            with open(path, "r+b") as f:
                f.write(b"\x00" * size)
                f.flush()
                os.fsync(f.fileno())
        path.unlink()


def is_pkcs12(data: bytes) -> bool:
    """Check whether data looks like a PKCS#12 (.p12) container."""
    return len(data) >= PKCS12_MIN_SIZE and data[0] == ASN1_SEQUENCE_TAG


def _b64decode(data: bytes) -> bytes | None:
    cleaned = BASE64_NOISE.sub(b"", data)
    if not cleaned:
        return None
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError):
        return None


def decode_certificate(raw: bytes | str) -> bytes:
    """Decode certificate material to PKCS#12 bytes.

    Accepts the base64 encoding of a .p12 file, with any line breaks,
    spaces or a leading BOM, and also a double base64 encoding, which is a
    common mistake when storing CI secrets. Binary .p12 content (as read
    from a certificate file) is accepted unchanged.

    Args:
        raw: The certificate material

    Returns:
        The PKCS#12 container bytes

    Raises:
        InvalidCredentialError: If the material does not decode to PKCS#12
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8")

    if is_pkcs12(raw) and not BASE64_TEXT.match(raw.removeprefix(UTF8_BOM)):
        return raw

    data = raw.strip().removeprefix(UTF8_BOM)
    decoded = _b64decode(data)
    if decoded is None:
        candidate = raw
    elif is_pkcs12(decoded):
        return decoded
    else:
        twice = _b64decode(decoded)
        if twice is not None and is_pkcs12(twice):
            return twice
        candidate = decoded

    if not candidate:
        raise InvalidCredentialError(
            "Certificate produced an empty file. "
            "Use base64-encoded .p12 contents."
        )
    if not is_pkcs12(candidate):
        raise InvalidCredentialError(
            "Certificate is not valid .p12 (PKCS#12). "
            "Use the base64-encoded contents of your .p12 file."
        )
    return candidate


# ----------------------------------------------------------------------------
# Artifact classification


class ArtifactKind(enum.Enum):
    """Kinds of signable macOS artifacts."""

    APPLICATION_BUNDLE = "application-bundle"
    FRAMEWORK = "framework"
    PLUGIN_BUNDLE = "plugin-bundle"
    EXTENSION_BUNDLE = "extension-bundle"
    DISK_IMAGE = "disk-image"
    INSTALLER_PACKAGE = "installer-package"
    EXECUTABLE_BINARY = "executable-binary"
    SHARED_LIBRARY = "shared-library"

    @property
    def is_bundle(self) -> bool:
        return self in BUNDLE_KINDS

    @property
    def is_submittable(self) -> bool:
        """Whether notarytool accepts the artifact without archiving it."""
        return self in SUBMITTABLE_KINDS


BUNDLE_SUFFIXES = {
    ".app": ArtifactKind.APPLICATION_BUNDLE,
    ".framework": ArtifactKind.FRAMEWORK,
    ".bundle": ArtifactKind.PLUGIN_BUNDLE,
    ".plugin": ArtifactKind.PLUGIN_BUNDLE,
    ".xpc": ArtifactKind.PLUGIN_BUNDLE,
    ".mxo": ArtifactKind.PLUGIN_BUNDLE,
    ".appex": ArtifactKind.EXTENSION_BUNDLE,
}

FILE_SUFFIXES = {
    ".pkg": ArtifactKind.INSTALLER_PACKAGE,
    ".dmg": ArtifactKind.DISK_IMAGE,
}

LIBRARY_SUFFIXES = [".dylib", ".so"]

BUNDLE_KINDS = frozenset(BUNDLE_SUFFIXES.values())

SUBMITTABLE_KINDS = frozenset(
    {
        ArtifactKind.APPLICATION_BUNDLE,
        ArtifactKind.INSTALLER_PACKAGE,
        ArtifactKind.DISK_IMAGE,
    }
)


@dataclasses.dataclass(frozen=True)
class Artifact:
    """A signable path and its kind."""

    path: Path
    kind: ArtifactKind

    @property
    def depth(self) -> int:
        """Nesting depth, as the number of path components."""
        return len(self.path.parts)

    def __str__(self) -> str:
        return str(self.path)


def is_macho(path: Pathlike) -> bool:
    """Check if a file is a Mach-O binary (thin or universal).

    Args:
        path: Path to the file to check

    Returns:
        True if the file is a Mach-O binary, False otherwise
    """
    path = Path(path)
    if not path.is_file() or path.is_symlink():
        return False
    try:
        return bool(is_platform_file(str(path)))
    except (OSError, ValueError, struct.error):
        return False


def classify(path: Pathlike) -> ArtifactKind | None:
    """Classify a path as a signable artifact.

    Directories are classified by bundle suffix, installers and disk
    images by file suffix, and everything else by content: only Mach-O
    files are signable binaries.

    Args:
        path: The path to classify

    Returns:
        The artifact kind, or None if the path is not an artifact
    """
    path = Path(path)
    if path.is_dir():
        return BUNDLE_SUFFIXES.get(path.suffix)
    if not path.is_file():
        return None
    if path.suffix in FILE_SUFFIXES:
        return FILE_SUFFIXES[path.suffix]
    if not is_macho(path):
        return None
    if path.suffix in LIBRARY_SUFFIXES:
        return ArtifactKind.SHARED_LIBRARY
    return ArtifactKind.EXECUTABLE_BINARY


# ----------------------------------------------------------------------------
# Bundle traversal


def _walk(root: Path) -> Iterator[tuple[Path, list[str], list[str]]]:
    """os.walk in sorted order; callers may prune the yielded dirnames."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        filenames.sort()
        yield Path(dirpath), dirnames, filenames


def _nested_kind(path: Path, is_dir: bool) -> ArtifactKind | None:
    """Kind of an entry found inside a bundle, or None if not signed."""
    if path.is_symlink():
        return None
    if is_dir:
        return BUNDLE_SUFFIXES.get(path.suffix)
    if path.suffix in LIBRARY_SUFFIXES:
        return ArtifactKind.SHARED_LIBRARY
    try:
        mode = path.stat().st_mode
    except OSError:
        return None
    if stat.S_ISREG(mode) and mode & EXECUTE_BITS:
        return ArtifactKind.EXECUTABLE_BINARY
    return None


def signing_order(artifact: Artifact) -> list[Artifact]:
    """Compute the inside-out signing order for an artifact.

    For a bundle, every nested bundle, executable file and shared library
    is returned deepest first, followed by the bundle itself. Entries of
    equal depth keep the (sorted) walk order. Symlinks are skipped.

    A non-bundle artifact is returned on its own.

    Args:
        artifact: The top-level artifact

    Returns:
        The artifacts to sign, in order
    """
    if not artifact.kind.is_bundle:
        return [artifact]

    seen = {artifact.path.resolve()}
    nested: list[Artifact] = []
    for dirpath, dirnames, filenames in _walk(artifact.path):
        directories = set(dirnames)
        for name in sorted(itertools.chain(dirnames, filenames)):
            path = dirpath / name
            kind = _nested_kind(path, name in directories)
            if kind is None:
                continue
            key = path.resolve()
            if key in seen:
                continue
            seen.add(key)
            nested.append(Artifact(path, kind))

    nested.sort(key=lambda a: a.depth, reverse=True)
    nested.append(artifact)
    return nested


def collect_artifacts(root: Pathlike) -> Iterator[Artifact]:
    """Lazily collect the top-level artifacts under root.

    - A bundle root yields only itself; its contents belong to its
      signing order.
    - A plain directory yields every outermost bundle, installer, disk
      image and Mach-O binary. The walk does not descend into bundles, so
      nothing inside a bundle is collected twice.
    - A file root yields itself if it is an artifact.

    Args:
        root: File or directory to search

    Yields:
        Top-level artifacts in walk order
    """
    root = Path(root)
    kind = classify(root)
    if not root.is_dir():
        if kind is not None:
            yield Artifact(root, kind)
        return

    if kind is not None:
        yield Artifact(root, kind)
        return

    for dirpath, dirnames, filenames in _walk(root):
        for name in list(dirnames):
            path = dirpath / name
            if path.is_symlink():
                continue
            kind = classify(path)
            if kind is not None:
                dirnames.remove(name)
                yield Artifact(path, kind)
        for name in filenames:
            path = dirpath / name
            if path.is_symlink():
                continue
            kind = classify(path)
            if kind is not None:
                yield Artifact(path, kind)


def discover(root: Pathlike) -> list[Artifact]:
    """Return the full signing order for everything under root."""
    return [
        item
        for artifact in collect_artifacts(root)
        for item in signing_order(artifact)
    ]


# ----------------------------------------------------------------------------
# Keychain


class Keychain:
    """A scoped keychain holding the signing or notarization credentials.

    Args:
        name: Keychain name (e.g. "build.keychain")
        password: Keychain password (random if not provided)
        dry_run: If True, only log the security commands
    """

    def __init__(
        self,
        name: str = DEFAULT_KEYCHAIN,
        password: str | None = None,
        dry_run: bool = False,
    ) -> None:
        self.name = name
        self.password = password or secrets.token_hex(32)
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"Keychain({self.name!r})"

    def run_command(
        self,
        command: list[str],
        hidden: Sequence[str | None] = (),
    ) -> str:
        """Run a security command with the keychain password masked."""
        return run_command(
            command,
            dry_run=self.dry_run,
            log=self.log,
            hidden=[self.password, *hidden],
        )

    def exists(self) -> bool:
        """Check whether the keychain is in the search list."""
        output = self.run_command(["security", "list-keychains"])
        return self.name in output

    def create(self) -> None:
        self.log.info("creating keychain %s", self.name)
        self.run_command(
            ["security", "create-keychain", "-p", self.password, self.name]
        )

    def make_default(self) -> None:
        self.run_command(["security", "default-keychain", "-s", self.name])

    def unlock(self) -> None:
        self.run_command(
            ["security", "unlock-keychain", "-p", self.password, self.name]
        )

    def delete(self) -> None:
        """Delete the keychain; a missing keychain is not an error."""
        try:
            self.run_command(["security", "delete-keychain", self.name])
        except CommandError as e:
            self.log.debug("could not delete keychain %s: %s", self.name, e)

    def ensure(self) -> None:
        """Reuse the keychain if present, otherwise create it.

        The keychain is then made default and unlocked. It is not deleted
        at the end of the run; later build steps may rely on it.
        """
        if self.exists():
            self.log.info("reusing keychain %s", self.name)
        else:
            self.create()
        self.make_default()
        self.unlock()

    @contextlib.contextmanager
    def scoped(self, restore: "Keychain | None" = None) -> Iterator["Keychain"]:
        """Create a fresh keychain for the duration of a block.

        A keychain left behind by an earlier run is deleted first. On exit
        the ``restore`` keychain becomes default again and this one is
        deleted, whether or not the block raised.
        """
        if self.exists():
            self.delete()
        self.create()
        try:
            self.make_default()
            self.unlock()
            yield self
        finally:
            if restore is not None:
                try:
                    restore.make_default()
                except CommandError as e:
                    self.log.warning(
                        "could not restore default keychain %s: %s",
                        restore.name,
                        e,
                    )
            self.delete()

    def import_certificate(self, cert_file: Path, passphrase: str) -> None:
        """Import a .p12 file into the keychain.

        Raises:
            CredentialImportError: If security rejects the certificate
        """
        command = ["security", "import", str(cert_file), "-k", self.name]
        command += ["-P", passphrase]
        for app in KEYCHAIN_TRUSTED_APPS:
            command += ["-T", app]
        try:
            self.run_command(command, hidden=[passphrase])
        except CommandError as e:
            raise CredentialImportError(
                "Certificate import failed. Check that the certificate "
                f"passphrase matches the .p12 password: {e.output or e}"
            ) from e

    def allow_codesign_access(self) -> None:
        """Let codesign use the imported key without a UI prompt."""
        command = [
            "security",
            "set-key-partition-list",
            "-S",
            KEY_PARTITION_LIST,
            "-s",
            "-k",
            self.password,
            self.name,
        ]
        try:
            self.run_command(command)
        except CommandError as e:
            self.log.warning("could not set key partition list: %s", e)


# ----------------------------------------------------------------------------
# Codesigning


class CodesignTool:
    """Signs and verifies paths with codesign.

    Every path is signed with the hardened runtime and a secure timestamp.

    Args:
        identity: Signing identity (e.g. "Developer ID Application: ...")
        entitlements: Optional entitlements plist applied to every path
        dry_run: If True, only log the codesign commands
    """

    def __init__(
        self,
        identity: str,
        entitlements: Pathlike | None = None,
        dry_run: bool = False,
    ) -> None:
        self.identity = identity
        self.entitlements = Path(entitlements) if entitlements else None
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

        self._cmd_codesign = [
            "codesign",
            "--force",
            "--sign",
            self.identity,
            "--timestamp",
            "--options",
            "runtime",
        ]
        if self.entitlements:
            self._cmd_codesign += ["--entitlements", str(self.entitlements)]

    def run_command(self, command: list[str]) -> str:
        return run_command(command, dry_run=self.dry_run, log=self.log)

    def sign(self, path: Path) -> None:
        """Sign a path in place.

        Raises:
            CodesignError: If codesign fails
        """
        try:
            self.run_command(self._cmd_codesign + [str(path)])
        except CommandError as e:
            raise CodesignError(
                f"codesign failed for {path}: {e.output or e}"
            ) from e

    def verify(self, path: Path) -> bool:
        """Verify the signature of a path.

        Returns:
            True if verification succeeds
        """
        try:
            self.run_command(["codesign", "--verify", "--verbose", str(path)])
            self.log.debug("verified: %s", path)
            return True
        except CommandError as e:
            self.log.error("verification failed for %s: %s", path, e.output)
            return False


@dataclasses.dataclass
class SigningCredentials:
    """Credentials and options for macOS signing.

    The certificate is either inline (base64 text) or a file; the file
    wins when both are set and it is readable.
    """

    identity: str | None = None
    certificate: str | None = dataclasses.field(default=None, repr=False)
    certificate_file: Path | None = None
    certificate_password: str | None = dataclasses.field(
        default=None, repr=False
    )
    keychain_password: str | None = dataclasses.field(
        default=None, repr=False
    )
    entitlements: Path | None = None

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None
    ) -> "SigningCredentials":
        """Read credentials from the environment (aliases included)."""
        cert_file = getenv(ENV_CERTIFICATE_FILE, environ)
        entitlements = getenv(ENV_ENTITLEMENTS, environ)
        return cls(
            identity=getenv(ENV_SIGNING_IDENTITY, environ),
            certificate=getenv(ENV_CERTIFICATE, environ),
            certificate_file=Path(cert_file) if cert_file else None,
            certificate_password=getenv(ENV_CERTIFICATE_PWD, environ),
            keychain_password=getenv(ENV_KEYCHAIN_PASSWORD, environ),
            entitlements=Path(entitlements) if entitlements else None,
        )

    def _certificate_file_readable(self) -> bool:
        return bool(
            self.certificate_file
            and self.certificate_file.is_file()
            and os.access(self.certificate_file, os.R_OK)
        )

    def validate(self) -> None:
        """Check that every required field is present.

        Raises:
            ConfigurationError: If a required field is missing, or the
                entitlements file is configured but does not exist
        """
        if not self.identity:
            raise ConfigurationError(
                f"{ENV_SIGNING_IDENTITY} (or "
                f"{ENV_ALIASES[ENV_SIGNING_IDENTITY]}) environment variable "
                "required"
            )
        if not self.certificate and not self._certificate_file_readable():
            raise ConfigurationError(
                f"{ENV_CERTIFICATE} (or {ENV_ALIASES[ENV_CERTIFICATE]}) or "
                f"readable {ENV_CERTIFICATE_FILE} required"
            )
        if not self.certificate_password:
            raise ConfigurationError(
                f"{ENV_CERTIFICATE_PWD} (or "
                f"{ENV_ALIASES[ENV_CERTIFICATE_PWD]}) environment variable "
                "required"
            )
        if self.entitlements and not self.entitlements.is_file():
            raise ConfigurationError(
                f"Entitlements file not found: {self.entitlements}"
            )

    def read_certificate(self) -> bytes:
        """Return the raw certificate material."""
        if self.certificate_file and self._certificate_file_readable():
            return self.certificate_file.read_bytes()
        return (self.certificate or "").encode("utf-8")


class SigningOrchestrator:
    """Sign every macOS artifact under a path, nested contents first.

    Args:
        credentials: Signing credentials
        keychain: Build keychain (default: build.keychain, reused if present)
        codesign: Signing tool (default: CodesignTool for the identity)
        dry_run: If True, only log the external commands

    Example:
        orchestrator = SigningOrchestrator(SigningCredentials.from_env())
        signed = orchestrator.run("dist/")
    """

    def __init__(
        self,
        credentials: SigningCredentials,
        keychain: Keychain | None = None,
        codesign: CodesignTool | None = None,
        dry_run: bool = False,
    ) -> None:
        self.credentials = credentials
        self.dry_run = dry_run
        self.keychain = keychain or Keychain(
            password=credentials.keychain_password, dry_run=dry_run
        )
        self.codesign = codesign
        self.log = logging.getLogger(self.__class__.__name__)

    def _codesign_tool(self) -> CodesignTool:
        if self.codesign is None:
            assert self.credentials.identity is not None
            self.codesign = CodesignTool(
                self.credentials.identity,
                entitlements=self.credentials.entitlements,
                dry_run=self.dry_run,
            )
        return self.codesign

    def run(self, root: Pathlike) -> list[Artifact]:
        """Sign every artifact under root.

        Args:
            root: File or directory to sign

        Returns:
            The top-level artifacts that were signed and verified

        Raises:
            ConfigurationError: Missing credentials or path
            InvalidCredentialError: Certificate does not decode to PKCS#12
            CredentialImportError: The keychain rejected the certificate
            CodesignError: codesign failed
            VerificationError: A signature failed verification
        """
        root = Path(root)
        self.credentials.validate()
        if not root.exists():
            raise ConfigurationError(f"Path not found: {root}")
        certificate = decode_certificate(self.credentials.read_certificate())

        self.log.info("=== Signing macOS artifacts in: %s ===", root)
        artifacts = collect_artifacts(root)
        first = next(artifacts, None)
        if first is None:
            self.log.info(
                "No macOS artifacts (.app, .pkg, .dmg, or Mach-O) found "
                "under %s",
                root,
            )
            return []

        self.log.info("Setting up keychain and importing certificate...")
        self.keychain.ensure()
        with SecretFile(certificate, prefix="cert.") as cert_file:
            assert self.credentials.certificate_password is not None
            self.keychain.import_certificate(
                cert_file, self.credentials.certificate_password
            )
        self.keychain.allow_codesign_access()

        signed: list[Artifact] = []
        for artifact in itertools.chain([first], artifacts):
            self.sign_artifact(artifact)
            signed.append(artifact)
        return signed

    def sign_artifact(self, artifact: Artifact) -> None:
        """Sign and verify an artifact and everything nested in it.

        Raises:
            CodesignError: codesign failed
            VerificationError: A signature failed verification
        """
        codesign = self._codesign_tool()
        for item in signing_order(artifact):
            self.log.info("Signing: %s", item.path)
            codesign.sign(item.path)
            if not codesign.verify(item.path):
                raise VerificationError(
                    f"codesign verification failed for: {item.path}"
                )
            self.log.info("Successfully signed: %s", item.path)

    def _section(self, *args: str) -> None:
        """Display a section header."""
        print()
        print("-" * 79)
        print(*args)

    def process_dry_run(self, root: Pathlike) -> None:
        """Show what would be signed without making changes."""
        root = Path(root)
        if not root.exists():
            raise ConfigurationError(f"Path not found: {root}")

        self._section("PROCESSING:", str(root))
        count = 0
        for artifact in collect_artifacts(root):
            count += 1
            self._section(f"{artifact.kind.value}:", str(artifact.path))
            for item in signing_order(artifact):
                print(f"  {item.kind.value}:", item.path)
            if artifact.kind.is_submittable:
                print("  notarize + staple:", artifact.path)
            else:
                print("  notarize (zip):", artifact.path)

        if not count:
            print("No macOS artifacts (.app, .pkg, .dmg, or Mach-O) found")
        self.log.info("DONE (dry run)!")


# ----------------------------------------------------------------------------
# Notarization


@dataclasses.dataclass
class NotarizationCredentials:
    """Apple ID credentials for notarytool (all or nothing)."""

    apple_id: str | None = None
    team_id: str | None = None
    password: str | None = dataclasses.field(default=None, repr=False)

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None
    ) -> "NotarizationCredentials":
        return cls(
            apple_id=getenv(ENV_NOTARY_USERNAME, environ),
            team_id=getenv(ENV_NOTARY_TEAM_ID, environ),
            password=getenv(ENV_NOTARY_PASSWORD, environ),
        )

    @property
    def enabled(self) -> bool:
        """True when all three credentials are set."""
        return bool(self.apple_id and self.team_id and self.password)


def parse_notary_status(output: str) -> str | None:
    """Return the final status reported by notarytool, if any."""
    matches = NOTARY_STATUS_PATTERN.findall(output or "")
    return matches[-1] if matches else None


def parse_submission_id(output: str) -> str | None:
    """Return the submission id reported by notarytool, if any."""
    match = NOTARY_ID_PATTERN.search(output or "")
    return match.group(1) if match else None


class NotaryTool:
    """Wraps notarytool, stapler and ditto.

    Args:
        dry_run: If True, only log the commands
    """

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(
        self,
        command: list[str],
        input: str | None = None,
        hidden: Sequence[str | None] = (),
    ) -> str:
        return run_command(
            command,
            dry_run=self.dry_run,
            log=self.log,
            input=input,
            hidden=hidden,
        )

    def store_credentials(
        self,
        profile: str,
        credentials: NotarizationCredentials,
        keychain: str,
    ) -> None:
        """Store a notarytool keychain profile.

        The password is piped on stdin so it does not show up in process
        listings; --password is only used if notarytool rejects stdin.

        Raises:
            NotarizationError: If the profile cannot be stored
        """
        assert credentials.apple_id and credentials.team_id
        command = [
            "xcrun",
            "notarytool",
            "store-credentials",
            profile,
            "--apple-id",
            credentials.apple_id,
            "--team-id",
            credentials.team_id,
            "--keychain",
            keychain,
        ]
        try:
            self.run_command(command, input=credentials.password)
            return
        except CommandError as e:
            self.log.warning(
                "notarytool did not accept the password on stdin (%s), "
                "retrying with --password",
                e.returncode,
            )

        try:
            self.run_command(
                command + ["--password", credentials.password or ""],
                hidden=[credentials.password],
            )
        except CommandError as e:
            raise NotarizationError(
                "Failed to store notarytool credentials in keychain "
                f"'{keychain}': {e.output or e}",
                e.returncode,
            ) from e

    def archive(self, path: Path, destination: Path) -> Path:
        """Zip a path for submission, keeping the parent directory name."""
        self.run_command(
            ["ditto", "-c", "-k", "--keepParent", str(path), str(destination)]
        )
        return destination

    def submit(
        self,
        path: Path,
        profile: str,
        keychain: str,
        subject: Path | None = None,
    ) -> str:
        """Submit a path and wait for the verdict.

        ``subject`` is the artifact named in errors when ``path`` is a
        temporary archive of it.

        Returns:
            notarytool's output

        Raises:
            NotarizationError: If notarytool fails or the verdict is not
                Accepted
        """
        command = [
            "xcrun",
            "notarytool",
            "submit",
            str(path),
            "--keychain-profile",
            profile,
            "--keychain",
            keychain,
            "--wait",
        ]
        subject = subject or path
        try:
            # no spinner frames in non-interactive (CI) logs
            if self.dry_run or not sys.stdout.isatty():
                output = self.run_command(command)
            else:
                with ProgressSpinner("Waiting for notarization"):
                    output = self.run_command(command)
        except CommandError as e:
            self._log_rejection(e.stdout or e.output or "", profile, keychain)
            raise NotarizationError(
                f"Notarization failed for {subject}: {e.output or e}",
                e.returncode,
            ) from e

        status = parse_notary_status(output)
        if status is not None and status != NOTARY_ACCEPTED:
            self._log_rejection(output, profile, keychain)
            raise NotarizationError(
                f"Notarization failed for {subject}: status {status}"
            )
        return output

    def _log_rejection(self, output: str, profile: str, keychain: str) -> None:
        submission_id = parse_submission_id(output)
        if submission_id is None:
            self.log.warning("could not find a submission id in: %s", output)
            return
        notary_log = self.fetch_log(submission_id, profile, keychain)
        if notary_log:
            self.log.error("notarization log for %s:\n%s", submission_id, notary_log)

    def fetch_log(
        self, submission_id: str, profile: str, keychain: str
    ) -> str | None:
        """Fetch the developer log of a submission, None if unavailable."""
        try:
            return self.run_command(
                [
                    "xcrun",
                    "notarytool",
                    "log",
                    submission_id,
                    "--keychain-profile",
                    profile,
                    "--keychain",
                    keychain,
                ]
            )
        except CommandError as e:
            self.log.warning("could not fetch notarization log: %s", e)
            return None

    def staple(self, path: Path) -> None:
        """Staple the notarization ticket to a path in place."""
        try:
            self.run_command(["xcrun", "stapler", "staple", str(path)])
        except CommandError as e:
            raise NotarizationError(
                f"Stapling failed for {path}: {e.output or e}", e.returncode
            ) from e


class NotarizationCoordinator:
    """Notarize and staple signed artifacts.

    A fresh notary keychain is created for the run and deleted afterwards;
    the build keychain is made default again.

    Args:
        credentials: Apple ID credentials
        build_keychain: The keychain used for signing
        notary: Notarization tool (default: NotaryTool)
        notary_keychain: Notary keychain (default: notary.keychain with the
            build keychain's password)
        profile: notarytool keychain profile name
        dry_run: If True, only log the external commands
    """

    def __init__(
        self,
        credentials: NotarizationCredentials,
        build_keychain: Keychain,
        notary: NotaryTool | None = None,
        notary_keychain: Keychain | None = None,
        profile: str = DEFAULT_NOTARY_PROFILE,
        dry_run: bool = False,
    ) -> None:
        self.credentials = credentials
        self.build_keychain = build_keychain
        self.notary = notary or NotaryTool(dry_run=dry_run)
        self.notary_keychain = notary_keychain or Keychain(
            DEFAULT_NOTARY_KEYCHAIN,
            password=build_keychain.password,
            dry_run=dry_run,
        )
        self.profile = profile
        self.log = logging.getLogger(self.__class__.__name__)

    def run(self, signed: Sequence[Artifact]) -> None:
        """Notarize every signed artifact, stopping at the first failure.

        Skipped entirely when the credentials are incomplete.

        Raises:
            NotarizationError: If any submission or staple fails
        """
        if not self.credentials.enabled:
            self.log.info(
                "Skipping notarization (%s, %s, %s not all set).",
                ENV_NOTARY_USERNAME,
                ENV_NOTARY_TEAM_ID,
                ENV_NOTARY_PASSWORD,
            )
            return

        self.log.info("=== Setting up notary credentials ===")
        with self.notary_keychain.scoped(restore=self.build_keychain):
            self.notary.store_credentials(
                self.profile, self.credentials, self.notary_keychain.name
            )
            self.log.info("=== Notarizing signed artifacts ===")
            for artifact in signed:
                self.notarize(artifact)

    def notarize(self, artifact: Artifact) -> None:
        """Submit one artifact, archiving it first if needed, then staple."""
        with contextlib.ExitStack() as stack:
            if artifact.kind.is_submittable:
                to_submit = artifact.path
            else:
                workdir = stack.enter_context(
                    tempfile.TemporaryDirectory(
                        prefix="releasesign.", dir=secret_dir()
                    )
                )
                to_submit = self.notary.archive(
                    artifact.path, Path(workdir) / f"{artifact.path.name}.zip"
                )
            self.log.info("Notarizing: %s", to_submit)
            self.notary.submit(
                to_submit,
                self.profile,
                self.notary_keychain.name,
                subject=artifact.path,
            )

        if artifact.kind.is_submittable:
            self.log.info("Stapling: %s", artifact.path)
            self.notary.staple(artifact.path)
        self.log.info("Successfully notarized: %s", artifact.path)


# ----------------------------------------------------------------------------
# Windows and JAR signing (Jsign)


@dataclasses.dataclass
class JsignCredentials:
    """Azure Key Vault access for Jsign and jarsigner."""

    jar: Path | None = None
    token: str | None = dataclasses.field(default=None, repr=False)
    keyvault_uri: str | None = None
    cert_name: str | None = None
    digest_alg: str = DEFAULT_DIGEST_ALG
    cert_chain: str | None = dataclasses.field(default=None, repr=False)

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None
    ) -> "JsignCredentials":
        jar = getenv(ENV_JSIGN_JAR, environ)
        return cls(
            jar=Path(jar) if jar else None,
            token=getenv(ENV_AZURE_TOKEN, environ),
            keyvault_uri=getenv(ENV_KEYVAULT_URI, environ),
            cert_name=getenv(ENV_CERT_NAME, environ),
            digest_alg=getenv(ENV_DIGEST_ALG, environ) or DEFAULT_DIGEST_ALG,
            cert_chain=getenv(ENV_CERT_CHAIN, environ),
        )

    def validate(self) -> None:
        """Raises ConfigurationError naming the first missing variable."""
        required = [
            (self.jar, ENV_JSIGN_JAR),
            (self.token, ENV_AZURE_TOKEN),
            (self.keyvault_uri, ENV_KEYVAULT_URI),
            (self.cert_name, ENV_CERT_NAME),
        ]
        for value, name in required:
            if not value:
                raise ConfigurationError(
                    f"{name} environment variable required"
                )


class JsignSigner:
    """Sign Windows binaries and JAR files with Jsign and Azure Key Vault.

    Windows files (.exe, .dll, .cat, .sys, .msi, .ps1) are signed with
    Jsign's Authenticode support, JAR files with jarsigner using the Jsign
    JCA provider. A single file that is not a JAR is signed as a Windows
    file whatever its extension.

    Args:
        path: File or directory to sign
        credentials: Key Vault access
        tsa_url: RFC 3161 timestamping server
        ts_retries: Timestamping retries (Jsign only)
        ts_retry_wait: Seconds between timestamping retries
        dry_run: If True, only log the commands
    """

    def __init__(
        self,
        path: Pathlike,
        credentials: JsignCredentials,
        tsa_url: str = DEFAULT_TSA_URL,
        ts_retries: int = DEFAULT_TS_RETRIES,
        ts_retry_wait: int = DEFAULT_TS_RETRY_WAIT,
        dry_run: bool = False,
    ) -> None:
        self.path = Path(path)
        self.credentials = credentials
        self.tsa_url = tsa_url
        self.ts_retries = ts_retries
        self.ts_retry_wait = ts_retry_wait
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str]) -> str:
        return run_command(
            command,
            dry_run=self.dry_run,
            log=self.log,
            hidden=[self.credentials.token],
        )

    def collect(self) -> tuple[list[Path], list[Path]]:
        """Return the Windows files and JAR files to sign."""
        if self.path.is_file():
            if self.path.suffix == JAR_EXTENSION:
                return [], [self.path]
            return [self.path], []

        windows: list[Path] = []
        jars: list[Path] = []
        for dirpath, _dirnames, filenames in _walk(self.path):
            for name in filenames:
                path = dirpath / name
                if path.is_symlink() or not path.is_file():
                    continue
                if path.suffix in WINDOWS_EXTENSIONS:
                    windows.append(path)
                elif path.suffix == JAR_EXTENSION:
                    jars.append(path)
        return windows, jars

    def sign_windows_file(self, path: Path) -> None:
        self.log.info("Signing: %s", path)
        creds = self.credentials
        command = [
            "java",
            "-jar",
            str(creds.jar),
            "--storetype",
            "AZUREKEYVAULT",
            "--keystore",
            str(creds.keyvault_uri),
            "--storepass",
            str(creds.token),
            "--alias",
            str(creds.cert_name),
            "--alg",
            creds.digest_alg,
            "--tsaurl",
            self.tsa_url,
            "--tsretries",
            str(self.ts_retries),
            "--tsretrywait",
            str(self.ts_retry_wait),
            str(path),
        ]
        try:
            self.run_command(command)
        except CommandError as e:
            raise CodesignError(
                f"Jsign failed for {path}: {e.output or e}"
            ) from e
        self.log.info("Successfully signed: %s", path)

    def sign_jar_file(self, path: Path, cert_chain: Path | None = None) -> None:
        self.log.info("Signing JAR: %s", path)
        creds = self.credentials
        command = [
            "jarsigner",
            "-J-cp",
            f"-J{creds.jar}",
            "-J--add-modules",
            "-Jjava.sql",
            "-providerClass",
            "net.jsign.jca.JsignJcaProvider",
            "-providerArg",
            str(creds.keyvault_uri),
            "-keystore",
            "NONE",
            "-storetype",
            "AZUREKEYVAULT",
            "-storepass",
            str(creds.token),
            "-tsa",
            self.tsa_url,
        ]
        if cert_chain is not None:
            command += ["-certchain", str(cert_chain)]
        command += [str(path), str(creds.cert_name)]
        try:
            self.run_command(command)
        except CommandError as e:
            raise CodesignError(
                f"jarsigner failed for {path}: {e.output or e}"
            ) from e
        self.log.info("Successfully signed: %s", path)

    def verify_file(self, path: Path) -> bool:
        """Verify a signed file; failures are logged, never raised."""
        self.log.info("Verifying: %s", path)
        if path.suffix == JAR_EXTENSION:
            command = ["jarsigner", "-verify", "-verbose", str(path)]
        else:
            command = ["java", "-jar", str(self.credentials.jar), "extract"]
            command.append(str(path))
        try:
            self.run_command(command)
            return True
        except CommandError as e:
            self.log.warning("verification failed for %s: %s", path, e)
            return False

    def process(self) -> list[Path]:
        """Sign and verify every target under the path.

        Returns:
            The signed files

        Raises:
            ConfigurationError: Missing credentials or path
            CodesignError: If signing fails
        """
        self.credentials.validate()
        if not self.path.exists():
            raise ConfigurationError(f"Path not found: {self.path}")

        self.log.info("=== Signing files in: %s ===", self.path)
        windows, jars = self.collect()
        if not windows and not jars:
            self.log.info("No Windows or JAR files found under %s", self.path)
            return []

        with contextlib.ExitStack() as stack:
            cert_chain = None
            if self.credentials.cert_chain and jars:
                cert_chain = stack.enter_context(
                    SecretFile(
                        f"{self.credentials.cert_chain}\n".encode("utf-8"),
                        prefix="certchain.",
                        suffix=".p7b",
                    )
                )
                self.log.info("Using certificate chain file")
            for path in windows:
                self.sign_windows_file(path)
            for path in jars:
                self.sign_jar_file(path, cert_chain)

        self.log.info("=== Verifying signatures ===")
        for path in windows + jars:
            self.verify_file(path)

        self.log.info("=== Signing complete ===")
        return windows + jars


# ----------------------------------------------------------------------------
# Command-line interface


def scrub_environment(names: Sequence[str] = SECRET_ENV_VARS) -> None:
    """Remove secrets from os.environ so child processes don't see them."""
    for name in names:
        os.environ.pop(name, None)


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "path",
        nargs="?",
        help="file or directory to sign",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="path to a TOML config file (default: .releasesign.toml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be signed without signing",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _require_path(args: argparse.Namespace) -> Path:
    if not args.path:
        raise ConfigurationError("Path argument required")
    path = Path(args.path)
    if not path.exists():
        raise ConfigurationError(f"Path not found: {path}")
    return path


def _cmd_macos(args: argparse.Namespace) -> None:
    """Handle 'macos' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("releasesign")

    config = get_config(Path(args.config) if args.config else None)
    path = _require_path(args)

    credentials = SigningCredentials.from_env()
    notarization = NotarizationCredentials.from_env()
    scrub_environment()

    entitlements = args.entitlements
    if entitlements is None and credentials.entitlements is None:
        entitlements = get_config_value(config, "macos", "entitlements")
    if entitlements:
        credentials.entitlements = Path(entitlements)

    if args.dry_run:
        SigningOrchestrator(credentials, dry_run=True).process_dry_run(path)
        return

    keychain_name = args.keychain or get_config_value(
        config, "macos", "keychain", DEFAULT_KEYCHAIN
    )
    keychain = Keychain(
        keychain_name or DEFAULT_KEYCHAIN,
        password=credentials.keychain_password,
    )

    notarize = notarization.enabled and not args.no_notarize
    if notarize:
        log.info("Notarization enabled (NOTARIZATION_* credentials provided)")

    signed = SigningOrchestrator(credentials, keychain=keychain).run(path)
    if not signed:
        return

    if notarize:
        notary_keychain = Keychain(
            get_config_value(
                config, "macos", "notary_keychain", DEFAULT_NOTARY_KEYCHAIN
            )
            or DEFAULT_NOTARY_KEYCHAIN,
            password=keychain.password,
        )
        coordinator = NotarizationCoordinator(
            notarization,
            keychain,
            notary_keychain=notary_keychain,
            profile=get_config_value(
                config, "macos", "notary_profile", DEFAULT_NOTARY_PROFILE
            )
            or DEFAULT_NOTARY_PROFILE,
        )
        coordinator.run(signed)
    elif args.no_notarize:
        log.info("Skipping notarization (--no-notarize)")
    else:
        log.info(
            "Skipping notarization (%s, %s, %s not all set).",
            ENV_NOTARY_USERNAME,
            ENV_NOTARY_TEAM_ID,
            ENV_NOTARY_PASSWORD,
        )

    log.info("=== macOS signing complete ===")


def _cmd_jsign(args: argparse.Namespace) -> None:
    """Handle 'jsign' subcommand."""
    setup_logging(args.verbose, not args.no_color)

    config = get_config(Path(args.config) if args.config else None)
    path = _require_path(args)

    credentials = JsignCredentials.from_env()
    scrub_environment([ENV_AZURE_TOKEN])
    if args.digest_alg:
        credentials.digest_alg = args.digest_alg
    elif not os.environ.get(ENV_DIGEST_ALG):
        credentials.digest_alg = (
            get_config_value(config, "jsign", "digest_alg", DEFAULT_DIGEST_ALG)
            or DEFAULT_DIGEST_ALG
        )

    try:
        ts_retries = int(
            get_config_value(config, "jsign", "ts_retries")
            or DEFAULT_TS_RETRIES
        )
        ts_retry_wait = int(
            get_config_value(config, "jsign", "ts_retry_wait")
            or DEFAULT_TS_RETRY_WAIT
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid jsign retry setting: {e}") from e

    signer = JsignSigner(
        path,
        credentials,
        tsa_url=get_config_value(config, "jsign", "tsa_url", DEFAULT_TSA_URL)
        or DEFAULT_TSA_URL,
        ts_retries=ts_retries,
        ts_retry_wait=ts_retry_wait,
        dry_run=args.dry_run,
    )
    signer.process()


def main() -> None:
    """Command line interface for releasesign."""
    try:
        parser = argparse.ArgumentParser(
            prog="releasesign",
            description="Sign and notarize release artifacts.",
            epilog=(
                "Examples:\n"
                "  releasesign macos dist/\n"
                "  releasesign macos dist/MyApp.app --dry-run\n"
                "  releasesign jsign dist/windows/\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {__version__}",
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- macos subcommand ---
        macos_parser = subparsers.add_parser(
            "macos",
            help="sign (and notarize) macOS artifacts",
            description=(
                "Sign .app bundles (inside-out), .pkg, .dmg and Mach-O "
                "binaries, then notarize and staple them when "
                "NOTARIZATION_USERNAME, NOTARIZATION_TEAM_ID and "
                "NOTARIZATION_PASSWORD are set."
            ),
            epilog=(
                "Environment:\n"
                "  MACOS_SIGNING_IDENTITY   signing identity (required)\n"
                "  MACOS_CERTIFICATE        base64 .p12 (or MACOS_CERTIFICATE_FILE)\n"
                "  MACOS_CERTIFICATE_PWD    .p12 password (required)\n"
                "  KEYCHAIN_PASSWORD        build keychain password (optional)\n"
                "  MACOS_ENTITLEMENTS       entitlements plist (optional)\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        _add_common_options(macos_parser)
        macos_parser.add_argument(
            "-e",
            "--entitlements",
            metavar="FILE",
            help="path to entitlements.plist (or set MACOS_ENTITLEMENTS)",
        )
        macos_parser.add_argument(
            "-k",
            "--keychain",
            metavar="NAME",
            help=f"build keychain name (default: {DEFAULT_KEYCHAIN})",
        )
        macos_parser.add_argument(
            "--no-notarize",
            action="store_true",
            help="skip notarization even if credentials are set",
        )
        macos_parser.set_defaults(func=_cmd_macos)

        # --- jsign subcommand ---
        jsign_parser = subparsers.add_parser(
            "jsign",
            help="sign Windows binaries and JAR files with Jsign",
            description=(
                "Sign Windows files and JARs using Azure Key Vault and Jsign."
            ),
            epilog=(
                "Environment:\n"
                "  JSIGN_JAR      path to the Jsign jar (required)\n"
                "  AZURE_TOKEN    Azure access token (required)\n"
                "  KEYVAULT_URI   Key Vault URI (required)\n"
                "  CERT_NAME      certificate name in the vault (required)\n"
                "  DIGEST_ALG     digest algorithm (default: SHA-256)\n"
                "  CERT_CHAIN     certificate chain for jarsigner (optional)\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        _add_common_options(jsign_parser)
        jsign_parser.add_argument(
            "--digest-alg",
            metavar="ALG",
            help=f"digest algorithm (default: {DEFAULT_DIGEST_ALG})",
        )
        jsign_parser.set_defaults(func=_cmd_jsign)

        args = parser.parse_args()
        args.func(args)

    except NotarizationError as e:
        logging.error(str(e))
        sys.exit(e.returncode)
    except ReleaseSignError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
