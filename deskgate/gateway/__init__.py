"""Gateway composition: admission middleware, upload dependencies, Gateway."""

from deskgate.gateway.composition import Admission, Gateway

__all__ = ["Admission", "Gateway"]
