"""Build spec loading and validation for vmbuilder."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote, urlsplit, urlunsplit

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmbuilder.constants import (
    CHECKSUM_LENGTHS,
    DEFAULT_CHECKSUM_TYPE,
    DEFAULT_DISK_SIZE_MB,
    DEFAULT_DOWNLOAD_RETRIES,
    DEFAULT_GUEST_OS_TYPE,
    DEFAULT_OUTPUT_DIRECTORY,
    DEFAULT_VM_NAME,
    ENV_PREFIX,
    HEX_RE,
    SUPPORTED_SCHEMES,
    TRUTHY,
)
from vmbuilder.exceptions import ConfigurationError
from vmbuilder.models import BuildConfig
from vmbuilder.utils import get_env

STRING_FIELDS = (
    "guest_os_type",
    "iso_url",
    "iso_checksum",
    "iso_checksum_type",
    "output_directory",
    "vm_name",
)
INT_FIELDS = ("disk_size", "download_retries")
BOOL_FIELDS = ("iso_verify_local",)
KNOWN_FIELDS = STRING_FIELDS + INT_FIELDS + BOOL_FIELDS

FALSY = {"0", "false", "no", "off", ""}


def load_spec_file(path: Path) -> Dict[str, Any]:
    """Read a YAML build spec into a raw mapping."""
    if not path.exists():
        raise ConfigurationError([f"Build spec missing: {path}"])
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigurationError([f"Build spec {path} contains invalid YAML: {exc}"])
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError([f"Build spec {path} must be a YAML mapping, got {type(data).__name__}"])
    return data


def spec_from_env(base: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Overlay ``VMBUILDER_<FIELD>`` environment variables on ``base``."""
    merged: Dict[str, Any] = dict(base or {})
    for field in KNOWN_FIELDS:
        raw = get_env(f"{ENV_PREFIX}{field.upper()}")
        if raw is not None:
            merged[field] = raw
    return merged


def _string_field(raw: Mapping[str, Any], name: str, errors: List[str]) -> str:
    value = raw.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        errors.append(f"{name} must be a string (got {type(value).__name__})")
        return ""
    return value.strip()


def _int_field(raw: Mapping[str, Any], name: str, default: int, errors: List[str]) -> int:
    value = raw.get(name)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        errors.append(f"{name} must be an integer (got '{value}')")
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        errors.append(f"{name} must be an integer (got '{value}')")
        return default
    if parsed < 1:
        errors.append(f"{name} must be >= 1 (got {parsed})")
        return default
    return parsed


def _bool_field(raw: Mapping[str, Any], name: str, errors: List[str]) -> bool:
    value = raw.get(name)
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUTHY:
            return True
        if lowered in FALSY:
            return False
    errors.append(f"{name} must be a boolean (got '{value}')")
    return False


def _canonical_netloc(netloc: str) -> str:
    userinfo, sep, host = netloc.rpartition("@")
    return f"{userinfo}{sep}{host.lower()}"


def normalize_iso_url(raw_url: str) -> Tuple[Optional[str], List[str]]:
    """Return the canonical form of ``raw_url`` and any problems found.

    Local paths and ``file`` URLs become absolute ``file://`` URIs; remote
    URLs get a lower-cased scheme and host. Normalizing a canonical URL
    returns it unchanged.
    """
    errors: List[str] = []
    try:
        parsed = urlsplit(raw_url)
    except ValueError as exc:
        return None, [f"iso_url is not a valid URL: {exc}"]

    scheme = parsed.scheme.lower() or "file"
    if scheme == "file":
        if parsed.scheme:
            if parsed.netloc not in ("", "localhost"):
                return None, [f"iso_url file URL must not name a remote host: {parsed.netloc}"]
            local = Path(unquote(parsed.path))
        else:
            local = Path(raw_url)
        local = local.expanduser()
        if not local.exists():
            errors.append(f"iso_url points to bad file: {local} does not exist")
        elif not local.is_file():
            errors.append(f"iso_url points to bad file: {local} is not a regular file")
        if errors:
            return None, errors
        return local.resolve().as_uri(), errors

    if scheme not in SUPPORTED_SCHEMES:
        return None, [f"Unsupported URL scheme in iso_url: {scheme}"]
    if not parsed.netloc:
        return None, [f"iso_url is missing a host: {raw_url}"]
    canonical = urlunsplit((scheme, _canonical_netloc(parsed.netloc), parsed.path or "/", parsed.query, ""))
    return canonical, errors


def prepare_config(raw: Mapping[str, Any]) -> Tuple[Optional[BuildConfig], List[str]]:
    """Normalize and validate a raw build spec.

    Every problem is collected; the config is only returned when there are
    none.
    """
    errors: List[str] = []

    unknown = sorted(str(key) for key in raw if key not in KNOWN_FIELDS)
    for key in unknown:
        errors.append(f"Unknown configuration key: {key}")

    guest_os_type = _string_field(raw, "guest_os_type", errors) or DEFAULT_GUEST_OS_TYPE
    output_directory = _string_field(raw, "output_directory", errors) or DEFAULT_OUTPUT_DIRECTORY
    vm_name = _string_field(raw, "vm_name", errors) or DEFAULT_VM_NAME

    checksum_type = (_string_field(raw, "iso_checksum_type", errors) or DEFAULT_CHECKSUM_TYPE).lower()
    if checksum_type not in CHECKSUM_LENGTHS:
        supported = ", ".join(sorted(CHECKSUM_LENGTHS))
        errors.append(f"Unsupported iso_checksum_type '{checksum_type}'. Supported: {supported}")

    iso_checksum = _string_field(raw, "iso_checksum", errors).lower()
    if not iso_checksum:
        errors.append("Due to large file sizes, an iso_checksum is required")
    elif checksum_type in CHECKSUM_LENGTHS:
        expected_len = CHECKSUM_LENGTHS[checksum_type]
        if not HEX_RE.match(iso_checksum) or len(iso_checksum) != expected_len:
            errors.append(
                f"iso_checksum must be a {expected_len}-character hex {checksum_type} digest (got '{iso_checksum}')"
            )

    iso_url = _string_field(raw, "iso_url", errors)
    if not iso_url:
        errors.append("An iso_url must be specified")
    else:
        canonical, url_errors = normalize_iso_url(iso_url)
        errors.extend(url_errors)
        if canonical is not None:
            iso_url = canonical

    disk_size = _int_field(raw, "disk_size", DEFAULT_DISK_SIZE_MB, errors)
    download_retries = _int_field(raw, "download_retries", DEFAULT_DOWNLOAD_RETRIES, errors)
    iso_verify_local = _bool_field(raw, "iso_verify_local", errors)

    if errors:
        return None, errors

    return (
        BuildConfig(
            guest_os_type=guest_os_type,
            output_directory=output_directory,
            vm_name=vm_name,
            iso_url=iso_url,
            iso_checksum=iso_checksum,
            iso_checksum_type=checksum_type,
            disk_size=disk_size,
            download_retries=download_retries,
            iso_verify_local=iso_verify_local,
        ),
        errors,
    )
