import json
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner
import yaml

from salt_provisioner.cli import app

runner = CliRunner()


def flat(text: str) -> str:
    """Undo rich line wrapping."""
    return " ".join(text.split())


@pytest.fixture
def config_file(tmp_path: Path, state_tree: Path) -> Path:
    path = tmp_path / "provisioner.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "local_state_tree": str(state_tree),
                "skip_bootstrap": True,
                "grains": False,
                "custom_state": "webserver",
                "sudo_password": "hunter2",
            }
        )
    )
    return path


class TestRenderCommand:
    def test_prints_salt_call(self, config_file: Path):
        result = runner.invoke(app, ["render-command", "--config", str(config_file)])

        assert result.exit_code == 0
        assert result.stdout.strip() == (
            "salt-call --local state.sls webserver --file-root=/srv/salt "
            "--pillar-root=/srv/pillar --retcode-passthrough -l info"
        )


class TestValidate:
    def test_valid_config(self, config_file: Path):
        result = runner.invoke(app, ["validate", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.stdout

    def test_json_output_masks_password(self, config_file: Path):
        result = runner.invoke(app, ["validate", "--config", str(config_file), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["custom_state"] == "webserver"
        assert data["sudo_password"] != "hunter2"

    def test_invalid_config_exits_with_2(self, tmp_path: Path):
        path = tmp_path / "provisioner.yaml"
        path.write_text("local_state_tree: does-not-exist\n")

        result = runner.invoke(app, ["validate", "--config", str(path)])

        assert result.exit_code == 2
        assert "Invalid configuration" in result.stdout

    def test_missing_config_file(self, tmp_path: Path):
        result = runner.invoke(app, ["validate", "--config", str(tmp_path / "absent.yaml")])

        assert result.exit_code == 2
        assert "Unable to read config file" in flat(result.stdout)


class TestApply:
    def test_successful_apply(self, config_file: Path, make_comm):
        comm = make_comm()

        with (
            patch("salt_provisioner.cli.setup_logging") as mock_setup_logging,
            patch("salt_provisioner.cli.SSHCommunicator", return_value=comm) as mock_ssh,
        ):
            result = runner.invoke(
                app, ["apply", "--config", str(config_file), "--host", "10.0.0.5", "-u", "deploy"]
            )

        assert result.exit_code == 0, result.stdout
        assert "10.0.0.5 provisioned successfully!" in result.stdout
        assert mock_ssh.call_args.args == ("10.0.0.5",)
        assert mock_ssh.call_args.kwargs["user"] == "deploy"
        assert comm.commands[-1] == (
            "echo 'hunter2' | sudo -S salt-call --local state.sls webserver "
            "--file-root=/srv/salt --pillar-root=/srv/pillar --retcode-passthrough -l info"
        )
        assert comm.disconnect_count == 1
        assert mock_setup_logging.call_args.kwargs["secrets"] == ["hunter2"]

    def test_failed_apply_exits_with_1(self, config_file: Path, make_comm):
        comm = make_comm(exit_statuses={"salt-call": 2})

        with (
            patch("salt_provisioner.cli.setup_logging"),
            patch("salt_provisioner.cli.SSHCommunicator", return_value=comm),
        ):
            result = runner.invoke(app, ["apply", "--config", str(config_file), "--host", "web1"])

        assert result.exit_code == 1
        assert "exited with status 2" in flat(result.stdout)
        assert "hunter2" not in result.stdout

    def test_provider_state_must_be_object(self, config_file: Path, tmp_path: Path):
        state = tmp_path / "state.json"
        state.write_text("[1, 2]")

        with patch("salt_provisioner.cli.setup_logging"):
            result = runner.invoke(
                app,
                ["apply", "--config", str(config_file), "--host", "web1", "--state", str(state)],
            )

        assert result.exit_code == 2
        assert "must be a JSON object" in flat(result.stdout)
