"""
Tests de la configuration de l'agent
"""

import os

from uem_agent.core.config import AgentConfig, create_default_config


class TestAgentConfig:

    def test_defaults_without_file(self, tmp_path):
        config = AgentConfig(str(tmp_path / "absent.conf"), environ={})

        assert config.get_server_config()['url'] == 'https://localhost:7200'
        assert config.get_channel_config()['legacy_inline_execution'] is False
        assert config.get_channel_config()['reconnect_delay'] == 120
        assert config.get_channel_config()['keepalive_interval'] == 15
        assert config.get_policy_config()['report_max_attempts'] == 0
        assert config.get_web_config()['host'] == '127.0.0.1'
        assert config.validate()

    def test_file_overrides_defaults(self, agent_config):
        server = agent_config.get_server_config()

        assert server['url'] == 'http://control-plane.test'
        assert server['agent_id'] == 'agent-1'
        assert server['long_timeout'] == 60
        assert agent_config.get_agent_config()['log_level'] == 'DEBUG'

    def test_installer_file_takes_priority(self, config_path):
        server_conf = os.path.join(os.path.dirname(config_path), "server.conf")
        with open(server_conf, 'w', encoding='utf-8') as f:
            f.write("[server]\nurl = https://installer.test\n")

        config = AgentConfig(config_path, environ={})

        assert config.get_server_config()['url'] == 'https://installer.test'

    def test_environment_overrides_url(self, config_path):
        config = AgentConfig(config_path, environ={'SATELLITE_BASE_URL': '"https://sat.test/"'})

        assert config.get_server_config()['url'] == 'https://sat.test'

    def test_validate_rejects_bad_values(self, agent_config):
        agent_config.set('server', 'url', 'ftp://nope')
        agent_config.set('web_interface', 'port', 70000)

        assert agent_config.validate() is False

    def test_validate_rejects_non_positive_interval(self, agent_config):
        agent_config.set('policy', 'poll_interval', 0)
        assert agent_config.validate() is False

    def test_create_default_config_writes_file(self, tmp_path):
        path = tmp_path / "nested" / "agent.conf"

        create_default_config(str(path))

        assert path.exists()
        assert "[channel]" in path.read_text(encoding="utf-8")
