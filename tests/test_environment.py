"""Tests for base-dir derivation, engine env maps and the scoped overlay."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from easylab.config import EasylabConfig
from easylab.engine.environment import (
    FALLBACK_BASE_DIR,
    build_engine_env,
    derive_base_dir,
    scoped_environ,
    subprocess_env,
)


class TestDeriveBaseDir:
    """Priority order of the shared cache base directory."""

    def test_explicit_config_wins(self):
        config = EasylabConfig(base_dir="/srv/easylab", work_dir="/data/jobs")
        env = {"EASYLAB_BASE_DIR": "/other"}
        assert derive_base_dir(config, env) == Path("/srv/easylab")

    def test_env_override(self):
        config = EasylabConfig(work_dir="/data/jobs")
        assert derive_base_dir(config, {"EASYLAB_BASE_DIR": "/other"}) == Path("/other")

    def test_work_dir_parent(self):
        config = EasylabConfig(work_dir="/data/jobs")
        env = {"PULUMI_HOME": "/home/u/.pulumi"}
        assert derive_base_dir(config, env) == Path("/data")

    def test_pulumi_home_parent(self):
        config = EasylabConfig(work_dir="", data_dir="")
        env = {"PULUMI_HOME": "/cache/.pulumi", "GOMODCACHE": "/gocache/go/pkg/mod"}
        assert derive_base_dir(config, env) == Path("/cache")

    def test_gomodcache_root(self):
        config = EasylabConfig(work_dir="", data_dir="")
        assert derive_base_dir(config, {"GOMODCACHE": "/cache/go/pkg/mod"}) == Path("/cache")

    def test_gocache_parent(self):
        config = EasylabConfig(work_dir="", data_dir="")
        assert derive_base_dir(config, {"GOCACHE": "/cache/go-build"}) == Path("/cache")

    def test_data_dir_parent(self):
        config = EasylabConfig(work_dir="", data_dir="/var/lib/easylab/data")
        assert derive_base_dir(config, {}) == Path("/var/lib/easylab")

    def test_fallback(self):
        config = EasylabConfig(work_dir="", data_dir="")
        assert derive_base_dir(config, {}) == FALLBACK_BASE_DIR


class TestBuildEngineEnv:
    """Tests for the per-invocation environment map."""

    def test_contents(self, easylab_config, lab_config, tmp_path):
        """Credentials, backend and cache locations are all set."""
        job_dir = tmp_path / "work" / "job-1"
        env = build_engine_env(easylab_config, lab_config, job_dir, environ={})
        base = Path(easylab_config.base_dir)

        assert env["OVH_APPLICATION_KEY"] == "ak"
        assert env["OVH_APPLICATION_SECRET"] == "as"
        assert env["OVH_CONSUMER_KEY"] == "ck"
        assert env["OVH_SERVICE_NAME"] == "svc"
        assert env["OVH_ENDPOINT"] == "ovh-eu"
        assert env["PULUMI_BACKEND_URL"] == f"file://{job_dir}"
        assert env["PULUMI_CONFIG_PASSPHRASE"] == "test-passphrase"
        assert env["PULUMI_SKIP_UPDATE_CHECK"] == "true"
        assert env["PULUMI_DISABLE_AUTOMATIC_PLUGIN_ACQUISITION"] == "true"
        assert env["PULUMI_HOME"] == str(base / ".pulumi")
        assert env["GOPATH"] == str(base / "go")
        assert env["GOMODCACHE"] == str(base / "go" / "pkg" / "mod")
        assert env["GOCACHE"] == str(base / "go-build")
        assert env["GOFLAGS"] == "-mod=mod"
        assert env["GOWORK"] == "off"

    def test_existing_caches_kept(self, easylab_config, lab_config, tmp_path):
        """Cache locations already in the environment are shared."""
        environ = {
            "PULUMI_HOME": "/shared/.pulumi",
            "GOMODCACHE": "/shared/mod",
            "GOCACHE": "/shared/build",
            "GOFLAGS": "-mod=readonly",
        }
        env = build_engine_env(easylab_config, lab_config, tmp_path, environ=environ)
        assert env["PULUMI_HOME"] == "/shared/.pulumi"
        assert env["GOMODCACHE"] == "/shared/mod"
        assert env["GOCACHE"] == "/shared/build"
        assert env["GOFLAGS"] == "-mod=readonly"

    def test_does_not_touch_process_env(self, easylab_config, lab_config, tmp_path):
        """Building the map never mutates os.environ."""
        before = dict(os.environ)
        build_engine_env(easylab_config, lab_config, tmp_path)
        assert dict(os.environ) == before

    def test_subprocess_env_overlays(self):
        """Child environments are os.environ plus the overlay."""
        with patch.dict(os.environ, {"EASYLAB_TEST_KEEP": "1"}):
            env = subprocess_env({"GOWORK": "off"})
        assert env["EASYLAB_TEST_KEEP"] == "1"
        assert env["GOWORK"] == "off"


class TestScopedEnviron:
    """Tests for the process environment overlay."""

    def test_restores_previous_values(self):
        with patch.dict(os.environ, {"EASYLAB_TEST_A": "old"}):
            os.environ.pop("EASYLAB_TEST_B", None)
            with scoped_environ({"EASYLAB_TEST_A": "new", "EASYLAB_TEST_B": "added"}):
                assert os.environ["EASYLAB_TEST_A"] == "new"
                assert os.environ["EASYLAB_TEST_B"] == "added"
            assert os.environ["EASYLAB_TEST_A"] == "old"
            assert "EASYLAB_TEST_B" not in os.environ

    def test_restores_on_exception(self):
        os.environ.pop("EASYLAB_TEST_C", None)
        with pytest.raises(RuntimeError):
            with scoped_environ({"EASYLAB_TEST_C": "x"}):
                raise RuntimeError("boom")
        assert "EASYLAB_TEST_C" not in os.environ
