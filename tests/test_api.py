from unittest import mock

import pytest
from fastapi.testclient import TestClient

import main
from core.services import build_services


@pytest.fixture
def client(backend, monkeypatch):
    monkeypatch.setattr(main, "services_factory", lambda: build_services(backend=backend))
    with TestClient(main.app) as client:
        yield client


def run_payload(**overrides):
    payload = {
        "name": "vm1",
        "id": 10,
        "image": "debian-12",
        "ssh_public_keys": ["ssh-ed25519 AAAA test"],
    }
    payload.update(overrides)
    return payload


def test_root(client):
    assert client.get("/").json()["message"] == "VM Provisioner API is running"


def test_run_and_remove(client, backend):
    response = client.post("/vms/run", json=run_payload())
    assert response.status_code == 201
    vm = response.json()["vm"]
    assert vm["ip"] == "192.168.122.10"
    assert vm["mac"] == "52:54:00:00:00:0a"

    assert client.get("/vms/list").json()["vms"][0]["name"] == "vm1"
    assert client.get("/vms/vm1/state").json()["state"] == "running"

    response = client.delete("/vms/vm1")
    assert response.status_code == 200
    assert backend.domains == {}
    assert set(backend.volumes) == {"debian-12"}


def test_run_validation(client):
    assert client.post("/vms/run", json=run_payload(id=0)).status_code == 422
    assert client.post("/vms/run", json=run_payload(id=1 << 24)).status_code == 422


def test_run_missing_image_is_404(client):
    response = client.post("/vms/run", json=run_payload(image="nope"))
    assert response.status_code == 404
    assert "could not get backing image volume" in response.json()["detail"]


def test_commit_running_vm_is_conflict(client):
    client.post("/vms/run", json=run_payload())
    response = client.post("/vms/vm1/commit")
    assert response.status_code == 409


def test_commit_with_shutdown(client, backend):
    client.post("/vms/run", json=run_payload())
    response = client.post("/vms/vm1/commit", json={"shutdown": True, "shutdown_timeout": 5})
    assert response.status_code == 200
    assert response.json()["image"] == "vm1"
    assert set(backend.volumes) == {"debian-12", "vm1"}


def test_state_of_unknown_vm(client):
    assert client.get("/vms/ghost/state").status_code == 404


def test_exec_shell(client, backend):
    backend.add_running_vm("build", 20, ip="192.168.122.20")
    runner = mock.AsyncMock()
    main.app.state.services.executor.ssh_runner = runner

    response = client.post("/exec/shell", json={"vm_names": ["build"], "script": "uname -a"})
    assert response.status_code == 200
    assert runner.await_args.args[0] == "192.168.122.20"
    assert runner.await_args.args[2] == "uname -a"


def test_exec_shell_unknown_target(client):
    response = client.post("/exec/shell", json={"vm_names": ["ghost"], "script": "true"})
    assert response.status_code == 404


def test_exec_requires_targets(client):
    assert client.post("/exec/shell", json={"vm_names": [], "script": "true"}).status_code == 422


def test_metrics(client):
    client.get("/")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "vm_provisioner_requests_total" in response.text
