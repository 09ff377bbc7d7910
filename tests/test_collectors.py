"""
Tests des utilitaires de collecte

Les commandes système sont remplacées par des sorties préparées.
"""

import sys

import pytest

from uem_agent.collectors import SecurityCollector, SoftwareCollector
from uem_agent.collectors.base import BaseCollector


class ScriptedCollector(BaseCollector):
    """Collecteur dont _execute_command renvoie des sorties préparées"""

    category = 'test'

    def __init__(self, config, logger, outputs=None):
        super().__init__(config, logger)
        self.outputs = outputs or {}
        self.commands = []

    def _execute_command(self, command, timeout=30):
        self.commands.append(command)
        for prefix, output in self.outputs.items():
            if command.startswith(prefix):
                return output
        return None

    def collect(self):
        return self._start_collection()


class TestBaseCollector:

    def test_powershell_single_object_becomes_list(self, agent_config, agent_logger):
        collector = ScriptedCollector(agent_config, agent_logger, {'powershell': '{"Name": "eth0"}'})

        assert collector._powershell_json("Get-NetAdapter") == [{'Name': 'eth0'}]
        assert 'ConvertTo-Json' in collector.commands[0]

    def test_powershell_invalid_output(self, agent_config, agent_logger):
        collector = ScriptedCollector(agent_config, agent_logger, {'powershell': 'Access denied'})
        assert collector._powershell_json("Get-Tpm") == []

    def test_safe_execute_records_error(self, agent_config, agent_logger):
        collector = ScriptedCollector(agent_config, agent_logger)

        def broken():
            raise OSError("no access")

        assert collector._safe_execute(broken, "Erreur test", []) == []
        assert collector.collection_errors == ["Erreur test: no access"]

    def test_clean_string(self, agent_config, agent_logger):
        collector = ScriptedCollector(agent_config, agent_logger)
        assert collector._clean_string("  Intel\x00  Core\t i7 ") == "Intel Core i7"
        assert collector._clean_string(None) == ""

    def test_snapshot_is_timestamped(self, agent_config, agent_logger):
        snapshot = ScriptedCollector(agent_config, agent_logger).collect()
        assert snapshot['discoveryTimestamp'].endswith('Z')


class TestSoftwareCollector:

    def test_dpkg_parsing_and_cleanup(self, agent_config, agent_logger, monkeypatch):
        collector = SoftwareCollector(agent_config, agent_logger)
        output = "zlib1g\t1.2\tUbuntu\ncurl\t7.8\t\ncurl\t7.8\t\n"
        monkeypatch.setattr(collector, '_execute_command', lambda command, timeout=30: output)

        programs = collector._cleanup_programs(collector._collect_linux_dpkg())

        assert [p['name'] for p in programs] == ['curl', 'zlib1g']
        assert programs[0]['publisher'] is None
        assert programs[1]['source'] == 'dpkg'


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="pare-feu Linux")
class TestSecurityCollector:

    def test_ufw_firewall(self, agent_config, agent_logger, monkeypatch):
        collector = SecurityCollector(agent_config, agent_logger)
        monkeypatch.setattr(collector, '_execute_command',
                            lambda command, timeout=30: "Status: active" if command.startswith('ufw') else None)

        assert collector._unix_firewall() == {'provider': 'ufw', 'publicProfileEnabled': True}

    def test_no_firewall_tool(self, agent_config, agent_logger, monkeypatch):
        collector = SecurityCollector(agent_config, agent_logger)
        monkeypatch.setattr(collector, '_execute_command', lambda command, timeout=30: None)

        assert collector._unix_firewall() is None

    def test_encrypted_volumes(self, agent_config, agent_logger, monkeypatch):
        collector = SecurityCollector(agent_config, agent_logger)
        monkeypatch.setattr(collector, '_execute_command',
                            lambda command, timeout=30: "sda disk\nsda1 part\nluks-root crypt")

        assert collector._unix_encryption() == {'encryptedVolumes': ['luks-root']}
