from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("extinstaller.config")

CONFIG_ENV_VAR = "EXTINSTALLER_CONFIG"

CONFIG_LOCK = threading.Lock()


def _project_root() -> Path:
    # extinstaller/config.py -> extinstaller -> <project_root>
    return Path(__file__).resolve().parents[1]


DEFAULT_BUILD_ROOTS = [
    ".build/debug",
    ".build/release",
    ".build/x86_64-apple-macosx/debug",
    ".build/x86_64-apple-macosx/release",
    ".build/arm64-apple-macosx/debug",
    ".build/arm64-apple-macosx/release",
]


class InstallerConfig(BaseModel):
    """
    Tunables for locating, activating and supervising the extension.

    Relative development build roots are resolved against `project_root`
    (defaults to the current working directory at lookup time).
    """

    bundle_identifier: str = "com.usbipd.mac.SystemExtension"

    # --- bundle discovery ---
    bundle_suffix: str = ".systemextension"
    manifest_path: str = "Contents/Info.plist"
    executable_dir: str = "Contents/MacOS"
    provenance_file: str = "Contents/HomebrewMetadata.json"

    project_root: Optional[str] = None
    build_roots: List[str] = Field(default_factory=lambda: list(DEFAULT_BUILD_ROOTS))
    package_root: Optional[str] = "/opt/homebrew/Cellar/usbipd-mac"
    package_extensions_subdir: str = "Library/SystemExtensions"
    manual_bundle_path: Optional[str] = None
    max_search_depth: int = 4

    # --- service supervision ---
    service_label: str = "homebrew.mxcl.usbipd-mac"
    service_plist: Optional[str] = "/Library/LaunchDaemons/homebrew.mxcl.usbipd-mac.plist"
    formula_name: str = "usbipd-mac"
    daemon_process_name: str = "usbipd"
    daemon_port: int = 3240

    # --- timeouts (seconds) ---
    command_timeout: float = 5.0
    verify_timeout: float = 1.0
    activation_timeout: float = 300.0

    # --- registrar ---
    registrar_command: List[str] = Field(
        default_factory=lambda: ["usbipd", "system-extension", "--machine-readable"]
    )
    systemextensionsctl: str = "/usr/bin/systemextensionsctl"


class ConfigIO:
    """
    Reads/writes the installer config JSON atomically.

    Path resolution: explicit argument, then $EXTINSTALLER_CONFIG, then
    `<project_root>/data/installer.json`.
    """

    def __init__(self, config_path: Optional[Path] = None):
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if config_path is not None:
            self.config_path = Path(config_path)
        elif env_path:
            self.config_path = Path(env_path)
        else:
            self.config_path = _project_root() / "data" / "installer.json"
        logger.debug("ConfigIO initialized, config_path=%s", self.config_path)

    def load(self) -> InstallerConfig:
        with CONFIG_LOCK:
            if not self.config_path.exists():
                logger.info("No installer config at %s; using defaults", self.config_path)
                return InstallerConfig()

            try:
                raw = json.loads(self.config_path.read_text(encoding="utf-8"))
                return InstallerConfig.model_validate(raw)
            except (json.JSONDecodeError, ValidationError) as e:
                logger.error("Failed to load installer config %s: %s", self.config_path, e)
                raise RuntimeError(f"Failed to load installer config {self.config_path}: {e}")

    def save(self, cfg: InstallerConfig) -> None:
        with CONFIG_LOCK:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.config_path.with_suffix(".json.tmp")
            tmp.write_text(cfg.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(self.config_path)
            logger.info("Saved installer config to %s", self.config_path)


def load_config(config_path: Optional[Path] = None) -> InstallerConfig:
    return ConfigIO(config_path).load()
