"""
Opaque handles returned by runtime drivers, and the network bindings passed to them.
"""
from typing import List, Optional
from pydantic import BaseModel


class NetworkBinding(BaseModel):
    """
    Attaches a container to a runtime network under the given DNS aliases.
    """
    network: str
    aliases: List[str] = []


class RuntimeHandle(BaseModel):
    """
    Identifies one container instance in the external runtime.
    ``id`` is whatever the driver needs to find the instance again.
    """
    id: str
    service: str
    name: Optional[str] = None

    def __str__(self) -> str:
        return self.name or self.id


class NetworkHandle(BaseModel):
    """
    Identifies one network in the external runtime. ``created`` is False when
    an existing network was reused, so teardown leaves it alone.
    """
    id: str
    name: str
    created: bool = True
