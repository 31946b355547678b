"""
Workflow services: analysis, fingerprinting, wallet, registry, publishing.
"""

from .analysis import *
from .fingerprint import *
from .wallet import *
from .registry import *
from .publisher import *
from .workflow import *
