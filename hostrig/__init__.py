""" Provision and configure hosts for testing """

import importlib.metadata

__version__ = importlib.metadata.version(__name__)

__all__ = [
    'ExecutionContext',
    'GlobalOptions',
    'Host',
    'HostResult',
    'Logger',
    'Orchestrator',
    ]

from hostrig.host import Host
from hostrig.log import Logger
from hostrig.options import GlobalOptions
from hostrig.orchestrator import Orchestrator
from hostrig.queue import ExecutionContext
from hostrig.result import HostResult
