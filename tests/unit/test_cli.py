"""Tests for CLI commands."""
import json
from argparse import Namespace
from unittest.mock import Mock, patch

import pytest

from agent_graph.cli import cmd_plan, cmd_run, cmd_validate, load_operations, main
from agent_graph.dispatch import OperationRegistry


@pytest.fixture
def flow_file(tmp_path, linear_document):
    path = tmp_path / "linear.json"
    path.write_text(json.dumps(linear_document))
    return path


@pytest.fixture
def ops_module(tmp_path, monkeypatch):
    """Importable module 'cli_flow_ops' exposing OPERATIONS and register()."""
    (tmp_path / "cli_flow_ops.py").write_text(
        "OPERATIONS = {'upper': lambda args, inputs, ctx: inputs['text'].upper()}\n"
        "\n"
        "def register(registry):\n"
        "    registry.register('lower', lambda args, inputs, ctx: inputs['text'].lower())\n"
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    return "cli_flow_ops"


class TestCmdValidate:
    """Test cmd_validate function."""

    def test_valid_document(self, flow_file, capsys):
        result = cmd_validate(Namespace(file=str(flow_file)))

        assert result == 0
        assert "OK: linear (2 nodes, 3 edges)" in capsys.readouterr().out

    def test_invalid_document_lists_every_error(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(
            "nodes:\n"
            "  - {id: Bad, transform: {kind: code, body: '1'}}\n"
            "  - {id: Worse, transform: {kind: code, body: '1'}}\n"
        )

        result = cmd_validate(Namespace(file=str(path)))

        out = capsys.readouterr().out
        assert result == 1
        assert "2 validation error(s)" in out
        assert "invalid_node_id [Bad]" in out

    def test_unreadable_document(self, tmp_path, capsys):
        result = cmd_validate(Namespace(file=str(tmp_path / "missing.json")))

        assert result == 1
        assert "parse" in capsys.readouterr().out


class TestCmdPlan:
    """Test cmd_plan function."""

    def test_plan_text(self, flow_file, capsys):
        result = cmd_plan(Namespace(file=str(flow_file), json=False))

        out = capsys.readouterr().out
        assert result == 0
        assert "EXECUTION PLAN: linear" in out
        assert "Layer 1:" in out
        assert "exclaim (after upper)" in out

    def test_plan_json(self, flow_file, capsys):
        result = cmd_plan(Namespace(file=str(flow_file), json=True))

        summary = json.loads(capsys.readouterr().out)
        assert result == 0
        assert summary["layers"] == [["upper"], ["exclaim"]]


class TestCmdRun:
    """Test cmd_run function."""

    @patch('agent_graph.cli.setup_logging')
    def test_run_with_mapping_ops(self, mock_logging, flow_file, ops_module, capsys):
        args = Namespace(
            file=str(flow_file),
            request='{"session_id": "s1", "inputs": {"text": "hi"}}',
            ops=[f"{ops_module}:OPERATIONS"],
            deadline=None,
        )

        result = cmd_run(args)

        output = json.loads(capsys.readouterr().out)
        assert result == 0
        assert output["status"] == "succeeded"
        assert output["output"] == {"text": "HI!"}
        mock_logging.assert_called_once()

    @patch('agent_graph.cli.setup_logging')
    def test_run_failure_returns_one(self, mock_logging, flow_file, capsys):
        args = Namespace(file=str(flow_file), request='{"inputs": {"text": "hi"}}', ops=None, deadline=None)

        result = cmd_run(args)

        output = json.loads(capsys.readouterr().out)
        assert result == 1
        assert output["status"] == "failed"
        assert output["error"]["node_id"] == "upper"

    @patch('agent_graph.cli.setup_logging')
    def test_invalid_request_json(self, mock_logging, flow_file, capsys):
        args = Namespace(file=str(flow_file), request="{nope", ops=None, deadline=None)

        assert cmd_run(args) == 1
        assert "not valid JSON" in capsys.readouterr().out

    @patch('agent_graph.cli.setup_logging')
    def test_bad_ops_spec(self, mock_logging, flow_file, capsys):
        args = Namespace(file=str(flow_file), request=None, ops=["no_colon"], deadline=None)

        assert cmd_run(args) == 1
        assert "Error loading operations" in capsys.readouterr().out


class TestLoadOperations:
    """Test load_operations function."""

    def test_callable_target(self, ops_module):
        registry = OperationRegistry()

        load_operations(f"{ops_module}:register", registry)

        assert registry.list_operations() == ["lower"]

    @patch('agent_graph.cli.importlib')
    def test_registry_target(self, mock_importlib):
        source = OperationRegistry()
        source.register("echo", Mock())
        mock_importlib.import_module.return_value = Mock(shared=source)
        registry = OperationRegistry()

        load_operations("anything:shared", registry)

        assert registry.get("echo") is source.get("echo")

    @patch('agent_graph.cli.importlib')
    def test_unusable_target(self, mock_importlib):
        mock_importlib.import_module.return_value = Mock(value=42)

        with pytest.raises(ValueError):
            load_operations("anything:value", OperationRegistry())


class TestMain:
    """Test argument parsing."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_validate_command(self, flow_file, capsys):
        assert main(["validate", str(flow_file)]) == 0

    @patch('agent_graph.cli.setup_logging')
    def test_run_command(self, mock_logging, flow_file, ops_module, capsys):
        code = main([
            "run", str(flow_file),
            "--request", '{"inputs": {"text": "yo"}}',
            "--ops", f"{ops_module}:OPERATIONS",
            "--deadline", "5",
        ])

        assert code == 0
        assert json.loads(capsys.readouterr().out)["output"] == {"text": "YO!"}
