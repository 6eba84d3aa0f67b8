from .base import Prober
from .http_probe import HttpProbe

__all__ = ["HttpProbe", "Prober"]
