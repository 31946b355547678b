"""
Core infrastructure modules for errors, logging, and utilities.
"""

from .errors import *
from .logging_config import *
from .utils import *
