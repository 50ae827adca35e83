"""Test configuration loading and validation"""

import pytest
import yaml

from spotterm.core.exceptions import ConfigError
from spotterm.config.settings import Settings


ENV_VARS = (
    'SPOTIFY_CLIENT_ID',
    'SPOTIFY_CLIENT_SECRET',
    'SPOTIFY_REDIRECT_URL',
    'SPOTTERM_PLAYBACK_MODE',
    'SPOTTERM_TOKEN_PATH',
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def write_config(temp_dir):
    """Write a config.yaml into the temp dir and return its path"""
    def _write(data):
        data.setdefault('security', {})['config_directory'] = str(temp_dir / "home")
        path = temp_dir / "config.yaml"
        path.write_text(yaml.safe_dump(data), encoding='utf-8')
        return str(path)
    return _write


class TestSettings:
    """Test YAML and environment sources"""

    def test_yaml_values_applied(self, clean_env, write_config, temp_dir):
        path = write_config({
            'spotify': {'client_id': 'from-file'},
            'playback': {'mode': 'auto', 'poll_interval': 2.5, 'unknown_key': 1},
            'engine': {'enabled': True, 'backend': 'alsa'},
        })

        settings = Settings(path)

        assert settings.spotify.client_id == 'from-file'
        assert settings.playback.mode == 'auto'
        assert settings.playback.poll_interval == 2.5
        assert not hasattr(settings.playback, 'unknown_key')
        assert settings.engine.backend == 'alsa'
        assert (temp_dir / "home").is_dir()
        assert settings.errors() == []

    def test_environment_overrides_file(self, clean_env, write_config):
        """Test that environment variables win over config.yaml"""
        path = write_config({'spotify': {'client_id': 'from-file'}})
        clean_env.setenv('SPOTIFY_CLIENT_ID', 'from-env')
        clean_env.setenv('SPOTTERM_PLAYBACK_MODE', 'LOCAL')

        settings = Settings(path)

        assert settings.spotify.client_id == 'from-env'
        assert settings.playback.mode == 'local'

    def test_unreadable_explicit_file(self, clean_env, temp_dir):
        path = temp_dir / "broken.yaml"
        path.write_text("playback: [unclosed", encoding='utf-8')

        with pytest.raises(ConfigError):
            Settings(str(path))


class TestValidation:
    """Test configuration error reporting"""

    def test_invalid_mode(self, clean_env, write_config):
        settings = Settings(write_config({'spotify': {'client_id': 'x'}, 'playback': {'mode': 'bluetooth'}}))

        assert settings.errors() == ["Invalid playback mode: bluetooth"]
        with pytest.raises(ConfigError) as exc_info:
            settings.require_valid()
        assert exc_info.value.details['errors'] == settings.errors()

    def test_local_mode_requires_engine(self, clean_env, write_config):
        settings = Settings(write_config({'spotify': {'client_id': 'x'}, 'playback': {'mode': 'local'}}))

        assert "Playback mode 'local' requires engine.enabled" in settings.errors()
        assert not settings.validate()

    def test_missing_client_id(self, clean_env, write_config):
        settings = Settings(write_config({'engine': {'initial_volume': 150}}))

        errors = settings.errors()
        assert "Spotify client_id is required" in errors
        assert "Invalid engine initial_volume: 150" in errors

    def test_invalid_cache_size(self, clean_env, write_config):
        settings = Settings(write_config({'spotify': {'client_id': 'x'}, 'engine': {'cache_size': 'huge'}}))

        assert settings.errors() == ["Invalid engine cache_size: huge"]


class TestSaveConfig:
    """Test writing configuration back to disk"""

    def test_secrets_are_not_saved(self, clean_env, write_config, temp_dir):
        settings = Settings(write_config({'spotify': {'client_id': 'id', 'client_secret': 'secret'}}))
        settings.playback.default_device = "kitchen"
        target = temp_dir / "saved" / "config.yaml"

        settings.save_config(str(target))

        saved = yaml.safe_load(target.read_text(encoding='utf-8'))
        assert saved['spotify']['client_id'] == ""
        assert saved['spotify']['client_secret'] == ""
        assert saved['playback']['default_device'] == "kitchen"
        assert settings.spotify.client_id == 'id'
