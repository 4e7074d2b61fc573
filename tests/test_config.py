"""Tests for configuration loading and the command line interface."""

import json
import logging

import pytest
from pydantic import ValidationError

from workflow_engine.config import (
    AppConfig, LogLevel, get_production_config, get_testing_config, reset_config, validate_config
)
from workflow_engine.startup import create_argument_parser, load_configuration, main


@pytest.fixture(autouse=True)
def clean_config():
    """The CLI reconfigures the root logger; restore it afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    reset_config()
    yield
    reset_config()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestAppConfig:

    def test_defaults(self):
        config = AppConfig()

        assert config.worker_pool_size == 8
        assert config.max_parallel_nodes_per_execution is None
        assert config.is_sqlite
        assert config.enable_schedule_triggers

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_ENGINE_PORT", "9000")
        monkeypatch.setenv("WORKFLOW_ENGINE_WORKER_POOL_SIZE", "16")
        monkeypatch.setenv("WORKFLOW_ENGINE_NODE_TIMEOUT", "2.5")
        monkeypatch.setenv("WORKFLOW_ENGINE_USE_IN_MEMORY_STORE", "yes")
        monkeypatch.setenv("WORKFLOW_ENGINE_LOG_LEVEL", "debug")
        monkeypatch.setenv("WORKFLOW_ENGINE_CORS_ORIGINS", "http://a.example,http://b.example")

        config = AppConfig.from_env()

        assert config.port == 9000
        assert config.worker_pool_size == 16
        assert config.node_timeout == 2.5
        assert config.use_in_memory_store is True
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["http://a.example", "http://b.example"]

    def test_field_validation(self):
        with pytest.raises(ValidationError):
            AppConfig(port=0)
        with pytest.raises(ValidationError):
            AppConfig(database_url="oracle://db")
        with pytest.raises(ValidationError):
            AppConfig(worker_pool_size=0)
        with pytest.raises(ValidationError):
            AppConfig(execution_timeout=-1)

    def test_engine_options(self):
        options = get_testing_config().get_engine_options()

        assert options == {
            "worker_pool_size": 4,
            "max_parallel_nodes_per_execution": None,
            "max_active_executions": 50,
            "execution_timeout": 30,
            "node_timeout": 10,
            "tick_interval": 0.01,
        }

    def test_parallel_cap_cannot_exceed_pool(self):
        config = AppConfig(use_in_memory_store=True, worker_pool_size=2, max_parallel_nodes_per_execution=4)

        with pytest.raises(ValueError, match="exceeds worker_pool_size"):
            validate_config(config)

    def test_production_preset(self):
        config = get_production_config()

        assert config.is_production
        assert config.cors_origins == []
        assert config.execution_timeout == 3600


class TestCommandLine:

    def test_overrides(self):
        args = create_argument_parser().parse_args(
            ["--env", "testing", "--port", "9100", "--worker-pool-size", "6", "--max-parallel-nodes", "3", "run"]
        )

        config = load_configuration(args)

        assert config.port == 9100
        assert config.worker_pool_size == 6
        assert config.max_parallel_nodes_per_execution == 3
        assert config.database_url == "sqlite:///:memory:"

    def test_validate_workflow_file(self, tmp_path, capsys):
        path = tmp_path / "workflow.json"
        path.write_text(json.dumps({
            "id": "cli",
            "name": "CLI",
            "entry_node_id": "a",
            "nodes": [{"id": "a", "type": "task", "config": {"action": "noop"}}],
        }))

        main(["--env", "testing", "validate", str(path)])

        assert "Workflow 'cli': VALID" in capsys.readouterr().out

    def test_validate_invalid_workflow_file(self, tmp_path, capsys):
        path = tmp_path / "workflow.json"
        path.write_text(json.dumps({
            "id": "cli",
            "name": "CLI",
            "entry_node_id": "a",
            "nodes": [{"id": "a", "type": "task", "config": {"action": "teleport"}}],
        }))

        with pytest.raises(SystemExit) as exc_info:
            main(["--env", "testing", "validate", str(path)])

        assert exc_info.value.code == 1
        output = capsys.readouterr().out
        assert "INVALID" in output
        assert "unknown action 'teleport'" in output

    def test_config_validate(self, capsys):
        main(["--env", "testing", "config", "validate"])

        assert "Configuration validation: PASSED" in capsys.readouterr().out
