from __future__ import annotations

import json
import logging
import os
import plistlib
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple
from xml.parsers.expat import ExpatError

from pydantic import ValidationError

from ...config import InstallerConfig
from ..domain.models import (
    BundleDescriptor,
    DevelopmentEnvironment,
    EnvironmentKind,
    ManualEnvironment,
    PackageManagedEnvironment,
    ProvenanceRecord,
    SearchCandidate,
    SearchEntry,
)

logger = logging.getLogger("extinstaller.locator")

# Reverse-DNS: at least two dot-separated labels of letters, digits and hyphens.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*(\.[A-Za-z0-9][A-Za-z0-9-]*)+$")

SEARCH_BUDGET_SECONDS = 2.0


@dataclass
class _Match:
    path: Path
    identifier: str
    version: Optional[str]
    build: Optional[str]
    provenance: Optional[ProvenanceRecord] = None
    issues: List[str] = field(default_factory=list)


def _version_key(name: str) -> Tuple[int, ...]:
    # "v1.10.2_1" -> (1, 10, 2, 1); non-numeric names sort last
    return tuple(int(n) for n in re.findall(r"\d+", name))


class BundleLocator:
    """
    Finds the extension bundle across deployment layouts.

    Search order (first structurally valid match wins):
      1. development build roots (e.g. .build/debug)
      2. package-manager roots: <package_root>/<version>/Library/SystemExtensions/
         newest version first, provenance sidecar required
      3. the manually configured override path

    Every call re-reads the filesystem; nothing is cached.
    """

    def __init__(self, config: Optional[InstallerConfig] = None, *, cwd: Optional[Path] = None):
        self.config = config or InstallerConfig()
        self._cwd = cwd

    # ----------------------------
    # Search roots
    # ----------------------------

    def _base_dir(self) -> Path:
        if self.config.project_root:
            return Path(self.config.project_root)
        return self._cwd or Path.cwd()

    def search_roots(self) -> List[Tuple[EnvironmentKind, Path]]:
        roots: List[Tuple[EnvironmentKind, Path]] = []
        base = self._base_dir()
        for rel in self.config.build_roots:
            p = Path(rel)
            roots.append(("development", p if p.is_absolute() else base / p))
        if self.config.package_root:
            roots.append(("package_managed", Path(self.config.package_root)))
        if self.config.manual_bundle_path:
            roots.append(("manual", Path(self.config.manual_bundle_path)))
        return roots

    # ----------------------------
    # Public API
    # ----------------------------

    def locate(self) -> BundleDescriptor:
        started = time.monotonic()
        deadline = started + SEARCH_BUDGET_SECONDS
        entries: List[SearchEntry] = []

        for environment, root in self.search_roots():
            if environment == "development":
                match, entry = self._search_development(root, deadline)
            elif environment == "package_managed":
                match, entry = self._search_package_root(root, deadline)
            else:
                match, entry = self._search_manual(root)

            if match is not None:
                env_model, m = match
                logger.info(
                    "Located bundle %s (%s) in %s environment after %.3fs",
                    m.path,
                    m.identifier,
                    environment,
                    time.monotonic() - started,
                )
                return BundleDescriptor(
                    found=True,
                    bundle_path=str(m.path),
                    bundle_identifier=m.identifier,
                    version=m.version,
                    build_number=m.build,
                    environment=env_model,
                    provenance=m.provenance,
                    issues=m.issues,
                    search_entries=entries,
                )

            entries.append(entry)
            logger.debug("No bundle under %s: %s", root, entry.reason)

        issues = [f"{e.root}: {e.reason}" for e in entries]
        issues.append("No valid system extension bundle found in any search root")
        logger.warning("Bundle not found; searched %d root(s)", len(entries))
        return BundleDescriptor(found=False, issues=issues, search_entries=entries)

    # ----------------------------
    # Per-environment search
    # ----------------------------

    def _search_development(self, root: Path, deadline: float):
        if not root.is_dir():
            return None, SearchEntry(
                root=str(root), environment="development", exists=False,
                reason="build root does not exist",
            )

        candidates: List[SearchCandidate] = []
        bundles, exhausted = self._find_bundles(root, self.config.max_search_depth, deadline)
        for bundle in bundles:
            m, reason = self._validate(bundle, require_provenance=False)
            if m is not None:
                return (DevelopmentEnvironment(build_path=str(root)), m), None
            candidates.append(SearchCandidate(path=str(bundle), reason=reason))

        reason = "no valid bundle found" if candidates else f"no *{self.config.bundle_suffix} bundle found"
        if exhausted:
            reason += " (search time budget exhausted)"
        return None, SearchEntry(
            root=str(root), environment="development", exists=True,
            reason=reason, candidates=candidates,
        )

    def _search_package_root(self, root: Path, deadline: float):
        if not root.is_dir():
            return None, SearchEntry(
                root=str(root), environment="package_managed", exists=False,
                reason="package installation root does not exist",
            )

        try:
            version_dirs = [
                d for d in root.iterdir() if d.is_dir() and not d.name.startswith(".")
            ]
        except OSError as e:
            return None, SearchEntry(
                root=str(root), environment="package_managed", exists=True,
                reason=f"cannot list installation root: {e}",
            )

        version_dirs.sort(key=lambda d: (_version_key(d.name), d.name), reverse=True)
        candidates: List[SearchCandidate] = []

        for version_dir in version_dirs:
            if time.monotonic() > deadline:
                break
            ext_dir = version_dir / self.config.package_extensions_subdir
            if not ext_dir.is_dir():
                candidates.append(SearchCandidate(
                    path=str(ext_dir), reason=f"no {self.config.package_extensions_subdir} directory",
                ))
                continue

            bundles, _ = self._find_bundles(ext_dir, 1, deadline)
            if not bundles:
                candidates.append(SearchCandidate(
                    path=str(ext_dir), reason=f"no *{self.config.bundle_suffix} bundle found",
                ))
                continue

            for bundle in bundles:
                m, reason = self._validate(bundle, require_provenance=True)
                if m is not None:
                    env = PackageManagedEnvironment(
                        install_root=str(version_dir),
                        package_version=version_dir.name,
                    )
                    return (env, m), None
                candidates.append(SearchCandidate(path=str(bundle), reason=reason))

        reason = "no valid bundle found" if version_dirs else "no installed versions"
        return None, SearchEntry(
            root=str(root), environment="package_managed", exists=True,
            reason=reason, candidates=candidates,
        )

    def _search_manual(self, path: Path):
        if not path.exists():
            return None, SearchEntry(
                root=str(path), environment="manual", exists=False,
                reason="configured bundle path does not exist",
            )
        m, reason = self._validate(path, require_provenance=False)
        if m is not None:
            return (ManualEnvironment(path=str(path)), m), None
        return None, SearchEntry(
            root=str(path), environment="manual", exists=True, reason=reason,
            candidates=[SearchCandidate(path=str(path), reason=reason)],
        )

    # ----------------------------
    # Filesystem helpers
    # ----------------------------

    def _find_bundles(self, root: Path, max_depth: int, deadline: float) -> Tuple[List[Path], bool]:
        """
        Depth-limited walk collecting *.systemextension directories.
        Does not descend into bundles. Returns (bundles, budget_exhausted).
        """
        found: List[Path] = []
        stack: List[Tuple[Path, int]] = [(root, 0)]
        suffix = self.config.bundle_suffix

        while stack:
            if time.monotonic() > deadline:
                return sorted(found), True
            current, depth = stack.pop()
            try:
                with os.scandir(current) as it:
                    children = sorted(it, key=lambda e: e.name)
            except OSError:
                continue

            for child in children:
                if child.name.startswith("."):
                    continue
                try:
                    is_dir = child.is_dir()
                except OSError:
                    continue
                if not is_dir:
                    continue
                path = Path(child.path)
                if child.name.endswith(suffix):
                    found.append(path)
                elif depth + 1 < max_depth:
                    stack.append((path, depth + 1))

        return sorted(found), False

    def _validate(self, bundle: Path, *, require_provenance: bool) -> Tuple[Optional[_Match], str]:
        """Structural validation. Returns (match, "") or (None, reason)."""
        if not bundle.is_dir():
            return None, "bundle path is not a directory"

        manifest_path = bundle / self.config.manifest_path
        if not manifest_path.is_file():
            return None, f"missing manifest at {manifest_path}"

        try:
            with manifest_path.open("rb") as f:
                manifest = plistlib.load(f)
        except (plistlib.InvalidFileException, ExpatError, ValueError, OSError) as e:
            return None, f"unreadable manifest: {e}"

        if not isinstance(manifest, dict):
            return None, "manifest is not a dictionary"

        identifier = manifest.get("CFBundleIdentifier")
        if not isinstance(identifier, str) or not _IDENTIFIER_RE.match(identifier.strip()):
            return None, "missing or malformed CFBundleIdentifier"
        identifier = identifier.strip()

        executable = manifest.get("CFBundleExecutable")
        if not isinstance(executable, str) or not executable.strip():
            return None, "missing CFBundleExecutable in manifest"
        exe_path = bundle / self.config.executable_dir / executable
        if not exe_path.is_file():
            return None, f"missing executable at {exe_path}"

        provenance: Optional[ProvenanceRecord] = None
        if require_provenance:
            sidecar = bundle / self.config.provenance_file
            if not sidecar.is_file():
                return None, f"missing provenance metadata at {sidecar}"
            try:
                raw = json.loads(sidecar.read_text(encoding="utf-8"))
                provenance = ProvenanceRecord.model_validate(raw)
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                return None, f"unreadable provenance metadata: {e}"

        issues: List[str] = []
        expected = self.config.bundle_identifier
        if expected and identifier != expected:
            issues.append(f"Bundle identifier mismatch: expected {expected}, found {identifier}")

        version = manifest.get("CFBundleShortVersionString")
        build = manifest.get("CFBundleVersion")
        return _Match(
            path=bundle.resolve(),
            identifier=identifier,
            version=str(version) if version is not None else None,
            build=str(build) if build is not None else None,
            provenance=provenance,
            issues=issues,
        ), ""
