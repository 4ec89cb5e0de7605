"""
TorChat-Paste - Configuration tests.
"""

import pytest

from torchat.config import DEFAULT_CONFIG, Config
from torchat.constants import DEFAULT_KDF_PROFILE
from torchat.errors import ConfigError, ErrorCode


@pytest.fixture
def config_path(temp_dir):
    return temp_dir / "config.toml"


def test_defaults_without_file(config_path):
    config = Config(config_path)

    assert config.kdf_profile == DEFAULT_KDF_PROFILE
    assert config.padding_block_size == 256
    assert config.to_dict() == DEFAULT_CONFIG


def test_file_overrides_defaults(config_path):
    config_path.write_text('[security]\nkdf_profile = "moderate"\n')
    config = Config(config_path)

    assert config.kdf_profile == "moderate"
    # Untouched keys keep their defaults
    assert config.padding_block_size == 256


def test_env_overrides(config_path, monkeypatch):
    monkeypatch.setenv("TORCHAT_SECURITY_KDF_PROFILE", "sensitive")
    monkeypatch.setenv("TORCHAT_SECURITY_PADDING_BLOCK_SIZE", "512")
    monkeypatch.setenv("TORCHAT_LOGGING_FILE_LOGGING", "no")
    config = Config(config_path)

    assert config.kdf_profile == "sensitive"
    assert config.padding_block_size == 512
    assert config.get("logging", "file_logging") is False


def test_invalid_env_value_ignored(config_path, monkeypatch):
    monkeypatch.setenv("TORCHAT_PROTOCOL_FRAGMENT_SIZE", "lots")
    assert Config(config_path).get("protocol", "fragment_size") == 1024


def test_unknown_profile_rejected(config_path):
    config_path.write_text('[security]\nkdf_profile = "paranoid"\n')

    with pytest.raises(ConfigError) as exc_info:
        Config(config_path)
    assert exc_info.value.code is ErrorCode.E700_CONFIG_ERROR


@pytest.mark.parametrize("value", ["0", "-4", "true", '"256"'])
def test_positive_int_required(config_path, value):
    config_path.write_text(f"[security]\npadding_block_size = {value}\n")

    with pytest.raises(ConfigError):
        Config(config_path)


def test_parse_error(config_path):
    config_path.write_text("[security\n")

    with pytest.raises(ConfigError) as exc_info:
        Config(config_path)
    assert exc_info.value.code is ErrorCode.E704_CONFIG_PARSE_ERROR


def test_data_dir(config_path, temp_dir):
    config = Config(config_path)
    config.set("storage", "data_dir", str(temp_dir / "store"))

    assert config.data_dir == (temp_dir / "store").resolve()


def test_protocol_options(config_path):
    options = Config(config_path).protocol_options()

    assert options == {"version": 1, "max_fragment_size": 1024, "max_message_size": 10 * 1024 * 1024}


def test_save_and_reload(config_path):
    config = Config(config_path)
    config.set("security", "kdf_profile", "moderate")
    config.set("storage", "data_dir", 'C:\\Users\\me\\"odd"')
    config.save()

    reloaded = Config(config_path)
    assert reloaded.kdf_profile == "moderate"
    assert reloaded.get("storage", "data_dir") == 'C:\\Users\\me\\"odd"'
    assert reloaded.get("logging", "console_logging") is True


def test_create_example(temp_dir):
    path = temp_dir / "nested" / "example.toml"
    Config.create_example(path)

    assert path.read_text().startswith("# TorChat-Paste Configuration File")
    assert Config(path).to_dict() == DEFAULT_CONFIG


def test_reassembly_and_channel_options(config_path):
    config_path.write_text(
        "[protocol]\nhandshake_timeout = 2.5\nkeepalive_interval = 15\n"
        "reassembly_timeout = 30\nmax_reassembly_bytes = 4096\nmax_pending_reassemblies = 4\n"
        "connection_timeout = 10\n"
    )
    config = Config(config_path)

    assert config.reassembly_options() == {"max_bytes": 4096, "timeout": 30, "max_pending": 4}
    assert config.channel_options() == {"handshake_timeout": 2.5, "keepalive_interval": 15}
    assert config.connection_timeout == 10


@pytest.mark.parametrize("key", ["handshake_timeout", "keepalive_interval", "reassembly_timeout"])
@pytest.mark.parametrize("value", ["0", "-1.5", "false", '"soon"'])
def test_positive_duration_required(config_path, key, value):
    config_path.write_text(f"[protocol]\n{key} = {value}\n")

    with pytest.raises(ConfigError):
        Config(config_path)


def test_fractional_duration_accepted(config_path):
    config_path.write_text("[protocol]\nhandshake_timeout = 0.5\n")
    assert Config(config_path).channel_options()["handshake_timeout"] == 0.5
