import threading

import docker

from .config import settings

_client = None
_lock = threading.Lock()


def get_docker_client() -> docker.DockerClient:
    # Connect lazily so the API can boot (and report 503s) without a Docker socket.
    global _client
    with _lock:
        if _client is None:
            _client = docker.DockerClient(base_url=settings.docker_base_url)
        return _client
