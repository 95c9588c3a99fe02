#deployment_engine\api\container.py
from functools import lru_cache

from deployment_engine.container import Container, build_container


@lru_cache
def get_container() -> Container:
    return build_container()


def get_engine_service():
    return get_container().service
