import json
import pathlib
import sys
import tempfile
import unittest

ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from plan_agent.config import DEFAULT_API_URL, AgentConfig, load_config_file
from plan_agent.errors import ConfigError


class AgentConfigTests(unittest.TestCase):
    def test_defaults(self):
        cfg = AgentConfig.resolve({}, environ={})
        self.assertEqual(cfg.api_url, DEFAULT_API_URL)
        self.assertEqual(cfg.poll_interval_sec, 30)
        self.assertEqual(cfg.workspace_dir, "/workspace")
        self.assertEqual(cfg.exec_timeout_sec, 600)
        self.assertEqual(cfg.agent_id, "")

    def test_precedence_flag_env_file(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "config.yaml"
            path.write_text(
                "agent_id: from-file\napi_url: https://file.example\npoll_interval_sec: 5\nlog_level: debug\n",
                encoding="utf-8",
            )
            cfg = AgentConfig.resolve(
                {"agent_id": "from-flag", "api_url": ""},
                environ={"PLAN_AGENT_API_URL": "https://env.example/", "PLAN_AGENT_ID": "from-env"},
                config_path=path,
            )
        self.assertEqual(cfg.agent_id, "from-flag")
        self.assertEqual(cfg.api_url, "https://env.example")
        self.assertEqual(cfg.poll_interval_sec, 5)
        self.assertEqual(cfg.log_level, "DEBUG")
        self.assertTrue(cfg.config_path.endswith("config.yaml"))

    def test_legacy_agent_id_env(self):
        cfg = AgentConfig.resolve({}, environ={"AGENT_ID": "legacy"})
        self.assertEqual(cfg.agent_id, "legacy")

    def test_config_file_from_env_json(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "agent.json"
            path.write_text(json.dumps({"service_key": "k-123", "exec_timeout_sec": 42}), encoding="utf-8")
            cfg = AgentConfig.resolve({}, environ={"PLAN_AGENT_CONFIG": str(path)})
        self.assertEqual(cfg.service_key, "k-123")
        self.assertEqual(cfg.exec_timeout_sec, 42)

    def test_junk_integers_fall_back(self):
        cfg = AgentConfig.resolve({}, environ={"PLAN_AGENT_POLL_INTERVAL": "soon", "PLAN_AGENT_EXEC_TIMEOUT": "-3"})
        self.assertEqual(cfg.poll_interval_sec, 30)
        self.assertEqual(cfg.exec_timeout_sec, 600)

    def test_missing_explicit_file(self):
        with self.assertRaises(ConfigError):
            AgentConfig.resolve({}, environ={}, config_path="/nonexistent/plan-agent.yaml")

    def test_non_mapping_file(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "list.yaml"
            path.write_text("- a\n- b\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config_file(path)

    def test_empty_file(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "empty.yaml"
            path.write_text("", encoding="utf-8")
            self.assertEqual(load_config_file(path), {})

    def test_require_credentials(self):
        with self.assertRaisesRegex(ConfigError, "agent id"):
            AgentConfig(service_key="k").require_credentials()
        with self.assertRaisesRegex(ConfigError, "service key"):
            AgentConfig(agent_id="a").require_credentials()
        AgentConfig(agent_id="a", service_key="k").require_credentials()

    def test_to_dict_hides_key(self):
        self.assertEqual(AgentConfig(service_key="secret").to_dict()["service_key"], "set")


if __name__ == "__main__":
    unittest.main()
