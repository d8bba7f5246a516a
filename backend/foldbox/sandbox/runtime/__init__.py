from foldbox.sandbox.runtime.base import ContainerNotFoundError
from foldbox.sandbox.runtime.base import ContainerRuntime
from foldbox.sandbox.runtime.base import get_container_runtime
from foldbox.sandbox.runtime.base import RuntimeUnavailableError

__all__ = [
    "ContainerNotFoundError",
    "ContainerRuntime",
    "RuntimeUnavailableError",
    "get_container_runtime",
]
