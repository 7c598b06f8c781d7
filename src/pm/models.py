import re
from pathlib import PurePosixPath

from attrs import define, field

# Filesystem layout, relative to the install root
CACHE_DIR = PurePosixPath("var/cache/pm")
STATE_DIR = PurePosixPath("var/lib/pm")
AVAILABLE_DB = STATE_DIR / "available.json"
KEYRING_DIR = PurePosixPath("etc/pm/keyring")
CONFIG_FILE = PurePosixPath("etc/pm/config.toml")

# Reserved archive entries
MANIFEST_ENTRY = "manifest.sha256"
SIGNATURE_ENTRY = "manifest.sha256.asc"
CONTROL_ENTRIES = frozenset({MANIFEST_ENTRY, SIGNATURE_ENTRY})

PACKAGE_SUFFIX = ".pm"
PARTIAL_SUFFIX = ".part"

_NAME_RE = re.compile(r"^[A-Za-z0-9_+][A-Za-z0-9._+-]*$")
_VERSION_RE = re.compile(r"^[A-Za-z0-9_+][A-Za-z0-9._+]*$")


def _check_name(instance: object, attribute, value: str) -> None:
    if not isinstance(value, str) or not _NAME_RE.match(value):
        raise ValueError(
            f"Invalid package name {value!r}: only letters, digits, '.', '_', '+' and '-' are allowed."
        )


def _check_version(instance: object, attribute, value: str) -> None:
    if not isinstance(value, str) or not _VERSION_RE.match(value):
        raise ValueError(
            f"Invalid package version {value!r}: only letters, digits, '.', '_' and '+' are allowed."
        )


def _check_remote(instance: object, attribute, value: str) -> None:
    if not value.startswith(("http://", "https://")):
        raise ValueError(f"Invalid remote {value!r}: expected an http(s) URL.")


@define(frozen=True, slots=True)
class PackageMeta:
    """Identity of a resolved package, produced by the catalog."""

    name: str = field(validator=_check_name)
    version: str = field(validator=_check_version)
    remote: str = field(validator=_check_remote)

    @property
    def pkg_id(self) -> str:
        return f"{self.name}-{self.version}"

    @property
    def url(self) -> str:
        return f"{self.remote.rstrip('/')}/{self.pkg_id}{PACKAGE_SUFFIX}"

    def __str__(self) -> str:
        return self.pkg_id
