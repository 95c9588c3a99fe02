# runtime_agent/server.py
"""
Runtime Agent - Runs on the host.
Manages the Docker containers, the nginx configuration and certbot for the
deployment engine.
"""

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from functools import lru_cache
import docker
import logging

from runtime_agent.certbot import CertbotRunner, CertificateRequestFailed
from runtime_agent.docker_runtime import DockerRuntime, InstanceNotFound, RuntimeFailure
from runtime_agent.nginx import NginxManager, NginxRejected, NginxUnavailable
from runtime_agent.settings import get_agent_settings

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Runtime Agent",
    description="Host agent for the deployment engine",
    version="2.0.0"
)


# ============================================
# DEPENDENCIES
# ============================================

@lru_cache
def get_docker_client():
    try:
        client = docker.from_env()
        client.ping()
        logger.info("✅ Connected to Docker daemon")
        return client
    except docker.errors.DockerException as e:
        logger.error(f"❌ Failed to connect to Docker: {e}")
        return None


def get_runtime() -> DockerRuntime:
    client = get_docker_client()
    if client is None:
        get_docker_client.cache_clear()
        raise HTTPException(status_code=503, detail="Docker not available")

    settings = get_agent_settings()
    return DockerRuntime(
        client,
        stop_timeout=settings.stop_timeout,
        restart_policy=settings.restart_policy,
        pull_images=settings.pull_images,
    )


@lru_cache
def get_nginx() -> NginxManager:
    settings = get_agent_settings()
    return NginxManager(settings.nginx_config_path, binary=settings.nginx_binary)


@lru_cache
def get_certbot() -> CertbotRunner:
    settings = get_agent_settings()
    return CertbotRunner(
        live_dir=settings.letsencrypt_live_dir,
        certbot_binary=settings.certbot_binary,
        openssl_binary=settings.openssl_binary,
        timeout=settings.command_timeout,
    )


# ============================================
# REQUEST/RESPONSE MODELS
# ============================================

class CreateInstanceRequest(BaseModel):
    """Create instance request: a serialized ServiceSpec plus placement."""
    spec: Dict[str, Any]
    slot: int = Field(..., ge=0)
    fingerprint: str


class InstanceResponse(BaseModel):
    instance_id: str
    name: str
    environment: str
    kind: str
    slot: int
    image: str
    fingerprint: str
    health: str
    host_port: Optional[int] = None
    status: str


class InstanceListResponse(BaseModel):
    instances: List[InstanceResponse]


class HealthResponse(BaseModel):
    instance_id: str
    status: str  # HEALTHY | UNHEALTHY | STARTING


class CertificateRequest(BaseModel):
    webroot: str
    email: Optional[str] = None
    staging: bool = False


class CertificateResponse(BaseModel):
    domain: str
    expires_at: str
    fullchain_path: str
    privkey_path: str


class NodeInfoResponse(BaseModel):
    """Node information response."""
    docker_version: str
    containers_running: int
    containers_total: int
    images_count: int
    memory_total: int  # bytes
    cpu_count: int


# ============================================
# ENDPOINTS
# ============================================

@app.get("/health")
def health_check():
    """Health check endpoint."""
    if get_docker_client() is None:
        get_docker_client.cache_clear()
        raise HTTPException(status_code=503, detail="Docker not available")

    return {
        "status": "healthy",
        "docker_connected": True
    }


@app.get("/info", response_model=NodeInfoResponse)
def get_node_info():
    """Get node information."""
    client = get_docker_client()
    if client is None:
        get_docker_client.cache_clear()
        raise HTTPException(status_code=503, detail="Docker not available")

    try:
        info = client.info()
    except docker.errors.APIError as e:
        logger.error(f"Failed to get node info: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return NodeInfoResponse(
        docker_version=info.get("ServerVersion", "unknown"),
        containers_running=info.get("ContainersRunning", 0),
        containers_total=info.get("Containers", 0),
        images_count=info.get("Images", 0),
        memory_total=info.get("MemTotal", 0),
        cpu_count=info.get("NCPU", 0),
    )


# -------------------------
# Instances
# -------------------------

@app.get("/projects/{project}/environments/{environment}/instances", response_model=InstanceListResponse)
def list_instances(project: str, environment: str, runtime: DockerRuntime = Depends(get_runtime)):
    """Live instances of one environment."""
    try:
        instances = runtime.list_instances(project, environment)
    except docker.errors.APIError as e:
        raise HTTPException(status_code=500, detail=f"Docker error: {e}")
    return InstanceListResponse(instances=instances)


@app.post("/projects/{project}/environments/{environment}/instances", response_model=InstanceResponse)
def create_instance(
    project: str,
    environment: str,
    request: CreateInstanceRequest,
    runtime: DockerRuntime = Depends(get_runtime),
):
    """
    Create and start one instance.

    Steps:
    1. Pull image
    2. Create container on the environment network
    3. Start container
    4. Return instance details
    """
    if request.spec.get("environment") != environment:
        raise HTTPException(status_code=400, detail="spec environment does not match the path")

    try:
        return runtime.create_instance(project, request.spec, request.slot, request.fingerprint)
    except RuntimeFailure as e:
        logger.error(f"[{environment}/{request.spec.get('kind')}] Create failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.delete("/instances/{instance_id}")
def remove_instance(instance_id: str, runtime: DockerRuntime = Depends(get_runtime)):
    """Stop and remove an instance."""
    try:
        runtime.remove_instance(instance_id)
    except InstanceNotFound:
        raise HTTPException(status_code=404, detail="Instance not found")
    except RuntimeFailure as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"status": "removed", "instance_id": instance_id}


@app.get("/instances/{instance_id}/health", response_model=HealthResponse)
def instance_health(instance_id: str, runtime: DockerRuntime = Depends(get_runtime)):
    """Probe an instance once."""
    try:
        status = runtime.instance_health(instance_id)
    except InstanceNotFound:
        raise HTTPException(status_code=404, detail="Instance not found")
    except docker.errors.APIError as e:
        raise HTTPException(status_code=500, detail=f"Docker error: {e}")

    return HealthResponse(instance_id=instance_id, status=status)


# -------------------------
# Proxy
# -------------------------

@app.put("/proxy/config")
async def put_proxy_config(request: Request, nginx: NginxManager = Depends(get_nginx)):
    """Validate a new nginx configuration and swap it in. 422 leaves the live file untouched."""
    config_text = (await request.body()).decode("utf-8")
    if not config_text.strip():
        raise HTTPException(status_code=422, detail="empty configuration")

    try:
        nginx.install(config_text)
    except NginxRejected as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NginxUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {"status": "installed"}


@app.post("/proxy/reload")
def reload_proxy(nginx: NginxManager = Depends(get_nginx)):
    """Hot-reload nginx."""
    try:
        nginx.reload()
    except NginxRejected as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NginxUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {"status": "reloaded"}


# -------------------------
# Certificates
# -------------------------

@app.post("/certificates/{domain}", response_model=CertificateResponse)
def obtain_certificate(
    domain: str,
    request: CertificateRequest,
    certbot: CertbotRunner = Depends(get_certbot),
):
    """Issue or renew a certificate. Failures answer 502 with a classified reason."""
    try:
        return certbot.obtain(domain, request.webroot, email=request.email, staging=request.staging)
    except CertificateRequestFailed as e:
        raise HTTPException(status_code=502, detail={"reason": e.reason, "message": e.message})


if __name__ == "__main__":
    import uvicorn

    settings = get_agent_settings()
    logger.info("🚀 Starting Runtime Agent...")
    logger.info(f"📍 Listening on {settings.host}:{settings.port}")

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info"
    )
