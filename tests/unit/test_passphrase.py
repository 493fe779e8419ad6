"""
Unit tests for passphrase resolution (securebackup/utils/passphrase.py).
"""

import os
import logging

import pytest

from securebackup.errors import ConfigurationError
from securebackup.utils.passphrase import get_passphrase, read_passphrase_file


ENV = 'SECURE_BACKUP_PASSPHRASE'


class TestGetPassphrase:
    """Test source selection."""

    def test_flag(self, caplog):
        """Test a command-line passphrase works but is warned about."""
        with caplog.at_level(logging.WARNING):
            assert get_passphrase('from-flag', ENV) == 'from-flag'

        assert 'insecure' in caplog.text

    def test_environment(self, monkeypatch):
        monkeypatch.setenv(ENV, 'from-env')

        assert get_passphrase(None, ENV) == 'from-env'

    def test_file(self, passphrase_file, passphrase):
        assert get_passphrase(None, ENV, str(passphrase_file)) == passphrase

    def test_no_source(self):
        assert get_passphrase(None, ENV) == ''

    def test_multiple_sources(self, monkeypatch, passphrase_file):
        """Test two sources at once are rejected."""
        monkeypatch.setenv(ENV, 'from-env')

        with pytest.raises(ConfigurationError) as exc_info:
            get_passphrase('from-flag', ENV, str(passphrase_file))

        assert 'Multiple passphrase sources' in exc_info.value.message
        assert exc_info.value.hint == 'Use only one method'

    def test_flag_and_env(self, monkeypatch):
        monkeypatch.setenv(ENV, 'from-env')

        with pytest.raises(ConfigurationError, match='--passphrase flag'):
            get_passphrase('from-flag', ENV)


class TestReadPassphraseFile:
    """Test passphrase files."""

    def test_strips_whitespace(self, tmp_path):
        path = tmp_path / 'pw'
        path.write_text('  secret value \n\n')
        os.chmod(path, 0o600)

        assert read_passphrase_file(str(path)) == 'secret value'

    def test_missing(self, tmp_path):
        with pytest.raises(ConfigurationError, match='File not found'):
            read_passphrase_file(str(tmp_path / 'missing'))

    def test_empty(self, tmp_path):
        path = tmp_path / 'pw'
        path.write_text('\n  \n')

        with pytest.raises(ConfigurationError, match='empty'):
            read_passphrase_file(str(path))

    def test_world_readable_warns(self, tmp_path, caplog):
        path = tmp_path / 'pw'
        path.write_text('secret')
        os.chmod(path, 0o644)

        with caplog.at_level(logging.WARNING):
            assert read_passphrase_file(str(path)) == 'secret'

        assert 'world-readable' in caplog.text
