# registry_models.py
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from requests.adapters import BaseAdapter


class Registrant(BaseModel):
    """Ein Eintrag in der Registry: Kennung plus erreichbare Adresse."""
    id: str = ""
    address: str = ""


class ClientConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Sekunden; Werte unterhalb der Mindestgrenze werden ignoriert
    timeout: Optional[float] = None
    transport: Optional[BaseAdapter] = None


class Route(str, Enum):
    REGISTER = "/register"
    DEREGISTER = "/deregister"
    PING = "/ping"
    QUERY = "/query?id={id}"
