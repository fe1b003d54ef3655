import json

from fargate_deploy.orchestration.deployment_state import DeploymentStateManager, DeploymentStatus, create_deployment_id

RESOURCES = [("vpc", "ec2_vpc"), ("repository", "ecr_repository")]


def test_journal_tracks_resources_and_persists(tmp_path):
    state_file = tmp_path / ".deployment_state.json"
    manager = DeploymentStateManager(str(state_file))

    manager.start_deployment("apply-1", "apply", "rise-app", RESOURCES)
    manager.start_resource("vpc")
    manager.complete_resource("vpc", "create", "vpc-123")
    manager.start_resource("repository")
    manager.fail_resource("repository", "AccessDenied")
    manager.fail_deployment("repository: AccessDenied")

    data = json.loads(state_file.read_text())
    assert data["status"] == DeploymentStatus.FAILED.value
    assert data["resources"]["vpc"]["physical_id"] == "vpc-123"
    assert data["resources"]["vpc"]["status"] == "completed"
    assert data["resources"]["repository"]["error_message"] == "AccessDenied"

    loaded = DeploymentStateManager(str(state_file)).load_state()
    assert loaded.deployment_id == "apply-1"
    assert loaded.resources["vpc"].action == "create"


def test_status_summary(tmp_path):
    manager = DeploymentStateManager(str(tmp_path / "state.json"))
    assert manager.get_status_summary() == {"status": "no_deployment"}

    manager.start_deployment("apply-1", "apply", "rise-app", RESOURCES)
    manager.complete_resource("vpc", "noop", "vpc-123")
    manager.cancel_deployment()

    summary = manager.get_status_summary()
    assert summary["status"] == "cancelled"
    assert summary["progress"] == "1/2"
    assert summary["resources"]["repository"]["status"] == "pending"


def test_corrupt_journal_is_ignored(tmp_path):
    state_file = tmp_path / "state.json"
    state_file.write_text("{broken")

    assert DeploymentStateManager(str(state_file)).load_state() is None


def test_cleanup_state_file(tmp_path):
    state_file = tmp_path / "state.json"
    manager = DeploymentStateManager(str(state_file))
    manager.start_deployment("destroy-1", "destroy", "rise-app", RESOURCES)
    manager.complete_deployment()

    manager.cleanup_state_file()

    assert not state_file.exists()


def test_deployment_id_names_operation():
    assert create_deployment_id("destroy").startswith("destroy-")
