import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config.settings import METRICS_ENABLED
from core.logger import log_event
from core.metrics import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    record_vm_committed,
    record_vm_created,
    record_vm_removed,
)
from core.services import Services, build_services
from schemas.vm_schema import (
    DockerExecSchema,
    RsyncExecSchema,
    ShellExecSchema,
    VMCommitSchema,
    VMRunSchema,
)


def services_factory() -> Services:
    return build_services()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = services_factory()
    log_event("[app] Provisioning services started")
    try:
        yield
    finally:
        app.state.services.close()
        log_event("[app] Provisioning services stopped")


app = FastAPI(
    title="VM Provisioner API",
    description=(
        "Create, provision and tear down short-lived libvirt VMs.\n\n"
        "Features:\n"
        "- Copy-on-write boot volumes cloned from base images\n"
        "- Deterministic MAC and DHCP-reserved IP per VM ID\n"
        "- Commit a stopped VM as a new base image\n"
        "- Concurrent provisioning over SSH, rsync or Docker\n"
        "- Prometheus metrics"
    ),
    version="1.0.0",
    lifespan=lifespan,
)


def _services(request: Request) -> Services:
    return request.app.state.services


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    endpoint = request.url.path
    method = request.method

    if not METRICS_ENABLED or endpoint == "/metrics":
        return await call_next(request)

    start_time = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.time() - start_time
        REQUEST_COUNT.labels(method=method, endpoint=endpoint).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)


@app.get("/", tags=["System"])
def root():
    return {
        "message": "VM Provisioner API is running",
        "version": app.version,
    }


@app.post("/vms/run", tags=["VM Management"])
def run_vm(payload: VMRunSchema, request: Request):
    try:
        vm_info = _services(request).controller.run(
            payload.to_config(),
            wait_ssh=payload.wait_ssh,
            wait_timeout=payload.wait_timeout,
        )
        record_vm_created(payload.image)
        return JSONResponse(status_code=201, content={"status": "running", "vm": vm_info})
    except HTTPException:
        raise
    except Exception as e:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(e))


@app.delete("/vms/{name}", tags=["VM Management"])
def remove_vm(name: str, request: Request):
    try:
        _services(request).controller.rm(name)
        record_vm_removed()
        return {"status": "removed", "vm_name": name}
    except HTTPException:
        raise
    except Exception as e:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/vms/{name}/commit", tags=["VM Management"])
def commit_vm(name: str, request: Request, payload: Optional[VMCommitSchema] = None):
    payload = payload or VMCommitSchema()
    try:
        image = _services(request).controller.commit(
            name,
            shutdown=payload.shutdown,
            shutdown_timeout=payload.shutdown_timeout,
        )
        record_vm_committed()
        return {"status": "committed", "vm_name": name, "image": image}
    except HTTPException:
        raise
    except Exception as e:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/vms/list", tags=["VM Management"])
def list_vms(request: Request):
    try:
        return {"vms": _services(request).controller.list_vms()}
    except HTTPException:
        raise
    except Exception as e:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/vms/{name}/state", tags=["VM Management"])
def vm_state(name: str, request: Request):
    return _services(request).controller.get_vm_state(name)


@app.post("/exec/shell", tags=["Provisioning"])
async def exec_shell(payload: ShellExecSchema, request: Request):
    try:
        await _services(request).executor.exec_shell(payload.vm_names, payload.to_step())
        return {"status": "ok", "vm_names": payload.vm_names}
    except HTTPException:
        raise
    except Exception as e:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/exec/rsync", tags=["Provisioning"])
async def exec_rsync(payload: RsyncExecSchema, request: Request):
    try:
        await _services(request).executor.exec_rsync(payload.vm_names, payload.to_step())
        return {"status": "ok", "vm_names": payload.vm_names}
    except HTTPException:
        raise
    except Exception as e:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/exec/docker", tags=["Provisioning"])
async def exec_docker(payload: DockerExecSchema, request: Request):
    try:
        await _services(request).executor.exec_docker(payload.vm_names, payload.to_config())
        return {"status": "ok", "vm_names": payload.vm_names}
    except HTTPException:
        raise
    except Exception as e:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/metrics", tags=["Monitoring"])
def metrics():
    if not METRICS_ENABLED:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
