"""Config loading, merging, and interface normalization.

Two JSON files are read and shallow-merged, local keys winning:

* global: ``~/.config/ghostpipe/config.json``
* local:  ``ghostpipe.config.json`` (or ``.ghostpipe.json``) in the project
  root.  The global file may point elsewhere with ``localConfigPath``.

Interface entries may be bare host strings or objects; both are turned
into :class:`InterfaceDeclaration` here so nothing downstream has to care.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TypedDict

from ghostpipe.core.errors import ConfigError
from ghostpipe.core.permissions import file_declaration, parse_rule

DEFAULT_SIGNALING_SERVER = "wss://signaling.ghostpipe.dev"
DEFAULT_DIFF_BASE_BRANCH = "main"

GLOBAL_CONFIG_PATH = Path("~/.config/ghostpipe/config.json")
LOCAL_CONFIG_NAMES: tuple[str, ...] = ("ghostpipe.config.json", ".ghostpipe.json")

DEFAULT_INTERFACE_NAME = "Default"
INLINE_INTERFACE_NAME = "interface"

# Everything, read-write: what a bare host string is allowed to touch.
ALL_FILES_DECLARATION = "** rw"


class InterfaceConfig(TypedDict, total=False):
    name: str
    host: str
    file: str
    files: list[str]
    manager: bool
    open: bool


class GhostpipeConfig(TypedDict, total=False):
    signalingServer: str
    diffBaseBranch: str
    localConfigPath: str
    host: str
    interfaces: list[InterfaceConfig | str]


@dataclass(frozen=True)
class InterfaceDeclaration:
    """Canonical, immutable shape of one configured interface."""

    name: str
    host: str
    files: tuple[str, ...]
    manager: bool = False
    auto_open: bool = False


def default_config() -> GhostpipeConfig:
    """Return the built-in defaults (no interfaces)."""
    return {
        "signalingServer": DEFAULT_SIGNALING_SERVER,
        "diffBaseBranch": DEFAULT_DIFF_BASE_BRANCH,
    }


def read_config_file(path: Path) -> dict | None:
    """Read one JSON config file; ``None`` when it does not exist.

    Raises:
        ConfigError: If the file exists but is not a JSON object.
    """
    path = path.expanduser()
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot load {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Cannot load {path}: expected a JSON object")
    return data


def find_local_config(root: Path, name: str | None = None) -> Path | None:
    """Return the local config file under *root*, if any."""
    names = (name,) if name else LOCAL_CONFIG_NAMES
    for candidate in names:
        path = root / candidate
        if path.is_file():
            return path
    return None


def load_config(root: Path, global_path: Path | None = None) -> GhostpipeConfig:
    """Load defaults <- global <- local config for the project at *root*."""
    config: dict = dict(default_config())

    global_data = read_config_file(global_path or GLOBAL_CONFIG_PATH) or {}
    config.update(global_data)

    local_path = find_local_config(root, global_data.get("localConfigPath"))
    if local_path is not None:
        config.update(read_config_file(local_path) or {})

    # v1 configs called the interface list "hosts".
    if "interfaces" not in config and "hosts" in config:
        config["interfaces"] = config.pop("hosts")

    return config  # type: ignore[return-value]


def _default_name(index: int) -> str:
    """``Default`` for the first interface, ``Default 2`` ... after it."""
    return DEFAULT_INTERFACE_NAME if index == 0 else f"{DEFAULT_INTERFACE_NAME} {index + 1}"


def normalize_interface(
    raw: InterfaceConfig | str,
    index: int = 0,
    root: Path | None = None,
) -> InterfaceDeclaration:
    """Turn one config entry into an :class:`InterfaceDeclaration`.

    When *root* is given, a legacy single ``file`` must exist under it.

    Raises:
        ConfigError: On a missing host, a wrong type, or a bad file declaration.
    """
    if isinstance(raw, str):
        if not raw.strip():
            raise ConfigError(f"Interface #{index + 1}: empty host")
        return InterfaceDeclaration(
            name=_default_name(index),
            host=raw.strip(),
            files=(ALL_FILES_DECLARATION,),
        )

    if not isinstance(raw, dict):
        raise ConfigError(f"Interface #{index + 1}: expected an object or a host string")

    host = raw.get("host")
    if not host or not isinstance(host, str):
        raise ConfigError(f"Interface #{index + 1}: missing 'host'")
    name = raw.get("name") or _default_name(index)

    files = raw.get("files")
    if files is None and raw.get("file"):
        if root is not None and not (root / raw["file"]).is_file():
            raise ConfigError(f"File does not exist for interface {name}: {raw['file']}")
        files = [file_declaration(raw["file"])]
    if files is None:
        raise ConfigError(f"No file specified for interface {name} ({host})")
    if isinstance(files, str) or not all(isinstance(f, str) for f in files):
        raise ConfigError(f"Interface {name}: 'files' must be a list of strings")

    for declaration in files:
        parse_rule(declaration)

    return InterfaceDeclaration(
        name=str(name),
        host=host,
        files=tuple(files),
        manager=bool(raw.get("manager", False)),
        auto_open=bool(raw.get("open", False)),
    )


def normalize_interfaces(
    config: GhostpipeConfig, root: Path | None = None
) -> list[InterfaceDeclaration]:
    """Normalize and validate every configured interface.

    Raises:
        ConfigError: If no interfaces are configured, names collide, or any
            entry is malformed.
    """
    raw_list = config.get("interfaces")
    # A lone top-level "host" is shorthand for one everything-rw interface.
    if not raw_list and config.get("host"):
        raw_list = [config["host"]]
    if not raw_list:
        raise ConfigError(
            "No url or config found. Pass an interface url or create "
            f"{LOCAL_CONFIG_NAMES[0]} with an 'interfaces' list."
        )
    if not isinstance(raw_list, list):
        raise ConfigError("'interfaces' must be a list")

    declarations = [normalize_interface(raw, i, root) for i, raw in enumerate(raw_list)]

    seen: set[str] = set()
    for decl in declarations:
        if decl.name in seen:
            raise ConfigError(f"Duplicate interface name: {decl.name}")
        seen.add(decl.name)

    if sum(1 for d in declarations if d.manager) > 1:
        raise ConfigError("At most one interface may set 'manager': true")

    return declarations


_UNSAFE_FILENAME_RE = re.compile(r"[^a-zA-Z0-9.-]")


def default_inline_filename(url: str) -> str:
    """Derive a local file name from an interface url.

    ``https://example.com/app`` -> ``example.com_app.txt``
    """
    stripped = re.sub(r"^https?://", "", url)
    return f"{_UNSAFE_FILENAME_RE.sub('_', stripped)}.txt"


def inline_interface(url: str, file: str) -> InterfaceDeclaration:
    """Build the single interface used by ``ghostpipe <url> <file>``."""
    return InterfaceDeclaration(
        name=INLINE_INTERFACE_NAME,
        host=url,
        files=(file_declaration(file),),
    )
