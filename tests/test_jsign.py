"""Tests for Windows and JAR signing with Jsign."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from releasesign import (
    CodesignError,
    ConfigurationError,
    JsignCredentials,
    JsignSigner,
)


@pytest.fixture
def credentials(tmp_path):
    jar = tmp_path / "jsign.jar"
    jar.write_bytes(b"PK")
    return JsignCredentials(
        jar=jar,
        token="azure-token",
        keyvault_uri="https://vault.vault.azure.net",
        cert_name="release-cert",
    )


@pytest.fixture
def release(tmp_path):
    """Create a release directory with Windows files, JARs and noise."""
    root = tmp_path / "release"
    (root / "bin").mkdir(parents=True)
    (root / "lib").mkdir()
    (root / "bin" / "app.exe").write_bytes(b"MZ")
    (root / "bin" / "core.dll").write_bytes(b"MZ")
    (root / "bin" / "install.ps1").write_text("Write-Host hi")
    (root / "lib" / "plugin.jar").write_bytes(b"PK")
    (root / "README.txt").write_text("readme")
    (root / "bin" / "link.exe").symlink_to(root / "bin" / "app.exe")
    return root


class TestJsignCredentials:
    """Tests for JsignCredentials."""

    def test_from_env(self):
        credentials = JsignCredentials.from_env(
            {
                "JSIGN_JAR": "/opt/jsign.jar",
                "AZURE_TOKEN": "azure-token",
                "KEYVAULT_URI": "https://vault",
                "CERT_NAME": "cert",
            }
        )
        assert credentials.digest_alg == "SHA-256"
        assert credentials.cert_chain is None
        assert "azure-token" not in repr(credentials)
        credentials.validate()

    @pytest.mark.parametrize(
        "field, name",
        [
            ("jar", "JSIGN_JAR"),
            ("token", "AZURE_TOKEN"),
            ("keyvault_uri", "KEYVAULT_URI"),
            ("cert_name", "CERT_NAME"),
        ],
    )
    def test_validate(self, credentials, field, name):
        setattr(credentials, field, None)
        with pytest.raises(ConfigurationError, match=name):
            credentials.validate()


class TestJsignSigner:
    """Tests for JsignSigner."""

    def test_collect_directory(self, credentials, release):
        windows, jars = JsignSigner(release, credentials).collect()
        assert [p.name for p in windows] == ["app.exe", "core.dll", "install.ps1"]
        assert [p.name for p in jars] == ["plugin.jar"]

    def test_collect_single_file(self, credentials, release):
        """Test a single file is signed whatever its extension."""
        binary = release / "README.txt"
        assert JsignSigner(binary, credentials).collect() == ([binary], [])
        jar = release / "lib" / "plugin.jar"
        assert JsignSigner(jar, credentials).collect() == ([], [jar])

    @patch("subprocess.run")
    def test_windows_command(self, mock_run, credentials, tmp_path):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        target = tmp_path / "app.exe"
        signer = JsignSigner(target, credentials, ts_retries=5, ts_retry_wait=2)

        signer.sign_windows_file(target)

        call_args = mock_run.call_args[0][0]
        assert call_args[:3] == ["java", "-jar", str(credentials.jar)]
        assert call_args[call_args.index("--storetype") + 1] == "AZUREKEYVAULT"
        assert call_args[call_args.index("--alias") + 1] == "release-cert"
        assert call_args[call_args.index("--alg") + 1] == "SHA-256"
        assert call_args[call_args.index("--tsretries") + 1] == "5"
        assert call_args[call_args.index("--tsretrywait") + 1] == "2"
        assert call_args[-1] == str(target)

    @patch("subprocess.run")
    def test_jar_command(self, mock_run, credentials, tmp_path):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        jar = tmp_path / "plugin.jar"
        chain = tmp_path / "chain.p7b"

        JsignSigner(jar, credentials).sign_jar_file(jar, chain)

        call_args = mock_run.call_args[0][0]
        assert call_args[0] == "jarsigner"
        assert "net.jsign.jca.JsignJcaProvider" in call_args
        assert call_args[call_args.index("-certchain") + 1] == str(chain)
        assert call_args[-2:] == [str(jar), "release-cert"]

    @patch("subprocess.run")
    def test_failure_hides_token(self, mock_run, credentials, tmp_path):
        mock_run.side_effect = subprocess.CalledProcessError(
            1, "java", output="", stderr="401 for azure-token"
        )
        target = tmp_path / "app.exe"
        with pytest.raises(CodesignError) as excinfo:
            JsignSigner(target, credentials).sign_windows_file(target)
        assert "azure-token" not in str(excinfo.value)

    @patch("subprocess.run")
    def test_process(self, mock_run, credentials, release):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")

        signed = JsignSigner(release, credentials).process()

        assert [p.name for p in signed] == [
            "app.exe",
            "core.dll",
            "install.ps1",
            "plugin.jar",
        ]
        # One signing and one verification call per file
        assert mock_run.call_count == 8

    def test_cert_chain_lifetime(self, credentials, release, monkeypatch):
        """Test the chain file exists while jarsigner runs, then is removed."""
        runner = release.parent / "runner"
        runner.mkdir()
        monkeypatch.setenv("RUNNER_TEMP", str(runner))
        credentials.cert_chain = "-----BEGIN PKCS7-----"
        seen = []

        def fake_run(command, **kwargs):
            if "-certchain" in command:
                chain = command[command.index("-certchain") + 1]
                with open(chain) as f:
                    seen.append(f.read())
            return MagicMock(returncode=0, stdout="", stderr="")

        with patch("subprocess.run", side_effect=fake_run):
            JsignSigner(release, credentials).process()

        assert seen == ["-----BEGIN PKCS7-----\n"]
        assert list(runner.iterdir()) == []

    @patch("subprocess.run")
    def test_verification_failure_tolerated(self, mock_run, credentials, tmp_path):
        target = tmp_path / "app.exe"
        target.write_bytes(b"MZ")
        mock_run.side_effect = [
            MagicMock(returncode=0, stdout="", stderr=""),
            subprocess.CalledProcessError(1, "java", output="", stderr="bad"),
        ]

        assert JsignSigner(target, credentials).process() == [target]

    def test_nothing_to_sign(self, credentials, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        with patch("subprocess.run") as mock_run:
            assert JsignSigner(empty, credentials).process() == []
            mock_run.assert_not_called()

    def test_missing_path(self, credentials, tmp_path):
        with pytest.raises(ConfigurationError, match="Path not found"):
            JsignSigner(tmp_path / "missing", credentials).process()
