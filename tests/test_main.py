# =============================================================================
# CONVOY CLI TESTS
# =============================================================================
# The click commands: plan output, exit codes, and deploy wiring.
# =============================================================================

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from convoy.core.orchestrator import Orchestrator, RunResult
from convoy.core.policy import DeploymentPolicy
from convoy.domain.models import RunStatus
from convoy.errors import BuildError, CycleError, PolicyViolation
from convoy.main import EXIT_CANCELLED, EXIT_CONFIG, EXIT_FAILED, EXIT_OK, EXIT_TIMED_OUT, cli, exit_code

TEMPLATE = "AWSTemplateFormatVersion: '2010-09-09'\nResources: {}\n"


@pytest.fixture
def run_dir(tmp_path):
    """A run file with two templates beside it."""
    (tmp_path / "infra.yml").write_text(TEMPLATE)
    (tmp_path / "webapp.yml").write_text(TEMPLATE)
    (tmp_path / "run.yml").write_text(
        "stacks:\n"
        "  - name: infra\n"
        "    template: infra.yml\n"
        "    parameters:\n"
        "      EnvironmentName: '${environment}'\n"
        "  - name: webapp\n"
        "    template: webapp.yml\n"
        "    depends_on: [infra]\n"
    )
    return tmp_path


@pytest.fixture
def runner(tmp_path):
    """CLI runner with an isolated environment (default policy, no GitHub vars)."""
    return CliRunner(
        env={
            "CONVOY_POLICY": str(tmp_path / "no-policy.yaml"),
            "GITHUB_REPOSITORY": None,
            "GITHUB_SHA": None,
        }
    )


class TestExitCodes:
    """exit_code()"""

    def test_mapping(self):
        assert exit_code(RunResult(run_id="r", environment="dev")) == EXIT_OK
        assert exit_code(RunResult(run_id="r", environment="dev", status=RunStatus.TIMED_OUT)) == EXIT_TIMED_OUT
        assert exit_code(RunResult(run_id="r", environment="dev", status=RunStatus.CANCELLED)) == EXIT_CANCELLED

    def test_failed_run(self):
        """Stack and build failures exit 1."""
        result = RunResult(
            run_id="r", environment="dev", status=RunStatus.FAILED, error=BuildError("boom", 1, "")
        )
        assert exit_code(result) == EXIT_FAILED

    def test_configuration_failures(self):
        """Graph and policy failures exit 3: nothing was touched."""
        for error in (CycleError(["a", "b", "a"]), PolicyViolation("no", rule="max_stacks")):
            result = RunResult(run_id="r", environment="dev", status=RunStatus.FAILED, error=error)
            assert exit_code(result) == EXIT_CONFIG


class TestPlanCommand:
    """convoy plan"""

    def test_prints_plan(self, runner, run_dir):
        """Stacks are listed in dependency order with remote names."""
        result = runner.invoke(cli, ["plan", str(run_dir / "run.yml"), "-e", "dev"])

        assert result.exit_code == 0, result.output
        assert "dev-infra" in result.output
        assert result.output.index("infra") < result.output.index("webapp")

    def test_cycle_rejected(self, runner, tmp_path):
        """A dependency cycle is a configuration error."""
        (tmp_path / "t.yml").write_text(TEMPLATE)
        (tmp_path / "run.yml").write_text(
            "stacks:\n"
            "  - {name: a, template: t.yml, depends_on: [b]}\n"
            "  - {name: b, template: t.yml, depends_on: [a]}\n"
        )

        result = runner.invoke(cli, ["plan", str(tmp_path / "run.yml"), "-e", "dev"])

        assert result.exit_code == EXIT_CONFIG
        assert "cycle" in result.output

    def test_missing_environment(self, runner, run_dir):
        """Without -e or GITHUB_REPOSITORY there is nothing to deploy to."""
        result = runner.invoke(cli, ["plan", str(run_dir / "run.yml")])
        assert result.exit_code == EXIT_CONFIG

    def test_unknown_only_target(self, runner, run_dir):
        result = runner.invoke(cli, ["plan", str(run_dir / "run.yml"), "-e", "dev", "--only", "ghost"])
        assert result.exit_code == EXIT_CONFIG


class TestDeployCommand:
    """convoy deploy"""

    @pytest.fixture
    def orchestrator(self, driver, tmp_path):
        return Orchestrator(driver, policy=DeploymentPolicy(tmp_path / "no-policy.yaml"), runs_dir=None)

    def test_deploy_succeeds(self, runner, run_dir, orchestrator, provisioner):
        """Both stacks are created, in order."""
        with patch("convoy.main.build_orchestrator", return_value=orchestrator):
            result = runner.invoke(cli, ["deploy", str(run_dir / "run.yml"), "-e", "dev", "-r", "abc123"])

        assert result.exit_code == EXIT_OK, result.output
        assert [call[1] for call in provisioner.mutations] == ["dev-infra", "dev-webapp"]

    def test_deploy_failure_exit_code(self, runner, run_dir, orchestrator, provisioner):
        """A rolled-back stack fails the run; later stacks are not touched."""
        provisioner.script("dev-infra", "ROLLBACK_IN_PROGRESS", "ROLLBACK_COMPLETE")

        with patch("convoy.main.build_orchestrator", return_value=orchestrator):
            result = runner.invoke(cli, ["deploy", str(run_dir / "run.yml"), "-e", "dev"])

        assert result.exit_code == EXIT_FAILED
        assert [call[1] for call in provisioner.mutations] == ["dev-infra"]

    def test_config_error_before_wiring(self, runner, tmp_path):
        """A broken run file exits 3 before any client is created."""
        (tmp_path / "run.yml").write_text("stacks: [unclosed\n")

        with patch("convoy.main.build_orchestrator") as mock_build:
            result = runner.invoke(cli, ["deploy", str(tmp_path / "run.yml"), "-e", "dev"])

        assert result.exit_code == EXIT_CONFIG
        mock_build.assert_not_called()

    @patch("convoy.main.boto3")
    def test_malformed_policy_exits_config(self, mock_boto3, runner, run_dir, tmp_path):
        """A broken policy.yaml exits 3 with a message, not a traceback."""
        policy = tmp_path / "broken-policy.yaml"
        policy.write_text("max_stacks: [1\n")

        result = runner.invoke(
            cli, ["deploy", str(run_dir / "run.yml"), "-e", "dev"], env={"CONVOY_POLICY": str(policy)}
        )

        assert result.exit_code == EXIT_CONFIG
        assert "CONFIG ERROR" in result.output
