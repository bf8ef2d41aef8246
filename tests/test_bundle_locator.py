"""Tests for BundleLocator: search order, structural validation, search reporting."""

from pathlib import Path

from extinstaller.installation.services.bundle_locator import BundleLocator

from conftest import IDENTIFIER, make_bundle

PROVENANCE = {"version": "1.2.0", "installationPrefix": "/opt/homebrew"}


def _dev_root(config) -> Path:
    root = Path(config.project_root) / ".build" / "debug"
    root.mkdir(parents=True, exist_ok=True)
    return root


def _package_dir(config, version: str) -> Path:
    d = Path(config.package_root) / version / "Library" / "SystemExtensions"
    d.mkdir(parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------
class TestNotFound:
    def test_one_entry_per_search_root(self, config):
        locator = BundleLocator(config)
        d = locator.locate()
        assert not d.found
        assert d.bundle_path is None
        assert len(d.search_entries) == len(locator.search_roots())
        assert all(not e.exists for e in d.search_entries)

    def test_invalid_candidates_listed_with_reasons(self, config):
        make_bundle(_dev_root(config), with_executable=False)
        d = BundleLocator(config).locate()
        assert not d.found
        dev_entry = d.search_entries[0]
        assert dev_entry.exists
        assert len(dev_entry.candidates) == 1
        assert "missing executable" in dev_entry.candidates[0].reason

    def test_manual_root_counted_when_configured(self, config, tmp_path):
        config = config.model_copy(update={"manual_bundle_path": str(tmp_path / "nowhere.systemextension")})
        locator = BundleLocator(config)
        d = locator.locate()
        assert len(d.search_entries) == 4
        assert d.search_entries[-1].environment == "manual"


# ---------------------------------------------------------------------------
# Priority order
# ---------------------------------------------------------------------------
class TestSearchOrder:
    def test_development_build(self, config):
        bundle = make_bundle(_dev_root(config))
        d = BundleLocator(config).locate()
        assert d.found
        assert d.environment.kind == "development"
        assert Path(d.bundle_path) == bundle.resolve()
        assert d.bundle_identifier == IDENTIFIER
        assert d.version == "1.2.0"
        assert d.build_number == "42"

    def test_development_preferred_over_package(self, config):
        make_bundle(_package_dir(config, "1.2.0"), provenance=PROVENANCE)
        make_bundle(_dev_root(config))
        d = BundleLocator(config).locate()
        assert d.environment.kind == "development"

    def test_newest_package_version_wins(self, config):
        make_bundle(_package_dir(config, "1.9.0"), version="1.9.0", provenance=PROVENANCE)
        make_bundle(_package_dir(config, "1.10.0"), version="1.10.0", provenance=PROVENANCE)
        d = BundleLocator(config).locate()
        assert d.found
        assert d.environment.kind == "package_managed"
        assert d.environment.package_version == "1.10.0"
        assert d.version == "1.10.0"
        assert d.provenance.install_version == "1.2.0"
        assert d.provenance.install_prefix == "/opt/homebrew"

    def test_manual_path_used_last(self, config, tmp_path):
        bundle = make_bundle(tmp_path / "manual")
        config = config.model_copy(update={"manual_bundle_path": str(bundle)})
        d = BundleLocator(config).locate()
        assert d.found
        assert d.environment.kind == "manual"
        assert len(d.search_entries) == 3


# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------
class TestValidation:
    def test_package_requires_provenance(self, config):
        make_bundle(_package_dir(config, "1.2.0"))
        d = BundleLocator(config).locate()
        assert not d.found
        pkg_entry = d.search_entries[-1]
        assert pkg_entry.environment == "package_managed"
        assert "provenance" in pkg_entry.candidates[0].reason

    def test_unparseable_provenance(self, config):
        bundle = make_bundle(_package_dir(config, "1.2.0"))
        (bundle / "Contents" / "HomebrewMetadata.json").write_text("{not json")
        d = BundleLocator(config).locate()
        assert not d.found
        assert "unreadable provenance" in d.search_entries[-1].candidates[0].reason

    def test_provenance_missing_fields(self, config):
        make_bundle(_package_dir(config, "1.2.0"), provenance={"version": "1.2.0"})
        d = BundleLocator(config).locate()
        assert not d.found

    def test_malformed_identifier_invalidates(self, config):
        make_bundle(_dev_root(config), identifier="not_reverse_dns")
        d = BundleLocator(config).locate()
        assert not d.found
        assert "CFBundleIdentifier" in d.search_entries[0].candidates[0].reason

    def test_missing_identifier_invalidates(self, config):
        make_bundle(_dev_root(config), identifier=None)
        assert not BundleLocator(config).locate().found

    def test_identifier_mismatch_is_recorded_not_fatal(self, config):
        make_bundle(_dev_root(config), identifier="com.other.ext")
        d = BundleLocator(config).locate()
        assert d.found
        assert d.bundle_identifier == "com.other.ext"
        assert any("mismatch" in i for i in d.issues)

    def test_unreadable_manifest(self, config):
        make_bundle(_dev_root(config), manifest=b"\x00garbage")
        d = BundleLocator(config).locate()
        assert not d.found
        assert "manifest" in d.search_entries[0].candidates[0].reason

    def test_nested_bundle_within_depth(self, config):
        nested = _dev_root(config) / "Products" / "Debug"
        nested.mkdir(parents=True)
        make_bundle(nested)
        assert BundleLocator(config).locate().found

    def test_fresh_descriptor_each_call(self, config):
        locator = BundleLocator(config)
        assert not locator.locate().found
        make_bundle(_dev_root(config))
        assert locator.locate().found
