"""Tests for the command-line interface."""

import base64
import os
import subprocess
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parent.parent
P12 = b"\x30\x82\x01\x0a" + bytes(range(256)) * 2
MACHO_MAGIC_64 = b"\xcf\xfa\xed\xfe"


def run_cli(args, cwd, **extra_env):
    """Run releasesign in a clean environment holding only extra_env."""
    env = {
        "PATH": os.environ.get("PATH", ""),
        "PYTHONPATH": str(REPO_ROOT),
    }
    env.update(extra_env)
    return subprocess.run(
        [sys.executable, "-m", "releasesign", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        env=env,
    )


@pytest.fixture
def signing_env():
    return {
        "MACOS_SIGNING_IDENTITY": "Developer ID Application: Test (ABCDE12345)",
        "MACOS_CERTIFICATE": base64.b64encode(P12).decode(),
        "MACOS_CERTIFICATE_PWD": "p12-secret",
    }


class TestCLIHelp:
    """Tests for help and version output."""

    def test_help(self, tmp_path):
        result = run_cli(["--help"], tmp_path)
        assert result.returncode == 0
        assert "macos" in result.stdout
        assert "jsign" in result.stdout

    def test_macos_help(self, tmp_path):
        result = run_cli(["macos", "--help"], tmp_path)
        assert result.returncode == 0
        assert "--entitlements" in result.stdout
        assert "--no-notarize" in result.stdout
        assert "MACOS_SIGNING_IDENTITY" in result.stdout

    def test_version(self, tmp_path):
        result = run_cli(["--version"], tmp_path)
        assert result.returncode == 0
        assert "releasesign" in result.stdout


class TestCLIMacos:
    """Tests for the 'macos' subcommand."""

    def test_missing_path(self, tmp_path, signing_env):
        result = run_cli(["macos"], tmp_path, **signing_env)
        assert result.returncode == 1
        assert "Path argument required" in result.stderr

    def test_nonexistent_path(self, tmp_path, signing_env):
        result = run_cli(["macos", "missing"], tmp_path, **signing_env)
        assert result.returncode == 1
        assert "Path not found" in result.stderr

    def test_missing_identity(self, tmp_path, signing_env):
        del signing_env["MACOS_SIGNING_IDENTITY"]
        result = run_cli(["macos", str(tmp_path)], tmp_path, **signing_env)
        assert result.returncode == 1
        assert "MACOS_SIGNING_IDENTITY" in result.stderr

    def test_invalid_certificate(self, tmp_path, signing_env):
        signing_env["MACOS_CERTIFICATE"] = "not-valid-base64!!"
        result = run_cli(["macos", str(tmp_path)], tmp_path, **signing_env)
        assert result.returncode == 1
        assert "PKCS#12" in result.stderr

    def test_zero_artifacts(self, tmp_path, signing_env):
        """Test that a tree with nothing to sign succeeds without signing."""
        (tmp_path / "notes.txt").write_text("nothing to sign")
        result = run_cli(
            ["macos", str(tmp_path), "--no-color"], tmp_path, **signing_env
        )
        assert result.returncode == 0
        assert "No macOS artifacts" in result.stderr
        assert "p12-secret" not in result.stderr

    def test_missing_entitlements(self, tmp_path, signing_env):
        result = run_cli(
            ["macos", str(tmp_path), "-e", str(tmp_path / "missing.plist")],
            tmp_path,
            **signing_env,
        )
        assert result.returncode == 1
        assert "Entitlements file not found" in result.stderr

    def test_dry_run_plan(self, tmp_path):
        app = tmp_path / "My.app" / "Contents" / "MacOS"
        app.mkdir(parents=True)
        binary = app / "My"
        binary.write_bytes(MACHO_MAGIC_64 + b"\x00" * 100)
        binary.chmod(0o755)

        result = run_cli(["macos", str(tmp_path), "--dry-run"], tmp_path)

        assert result.returncode == 0
        assert "application-bundle:" in result.stdout
        assert "notarize + staple:" in result.stdout


class TestCLIJsign:
    """Tests for the 'jsign' subcommand."""

    def test_missing_variable(self, tmp_path):
        result = run_cli(["jsign", str(tmp_path)], tmp_path)
        assert result.returncode == 1
        assert "JSIGN_JAR" in result.stderr

    def test_nothing_to_sign(self, tmp_path):
        result = run_cli(
            ["jsign", str(tmp_path)],
            tmp_path,
            JSIGN_JAR=str(tmp_path / "jsign.jar"),
            AZURE_TOKEN="azure-token",
            KEYVAULT_URI="https://vault.vault.azure.net",
            CERT_NAME="release-cert",
        )
        assert result.returncode == 0
        assert "No Windows or JAR files" in result.stderr

    def test_invalid_retry_setting(self, tmp_path):
        config = tmp_path / "releasesign.toml"
        config.write_text('[jsign]\nts_retries = "many"\n')
        result = run_cli(["jsign", str(tmp_path), "-c", str(config)], tmp_path)
        assert result.returncode == 1
        assert "retry" in result.stderr
