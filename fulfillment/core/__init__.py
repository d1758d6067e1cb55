"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from fulfillment.core.config import get_settings, Settings, EnvironmentMode
from fulfillment.core.exceptions import FulfillmentError

__all__ = ["get_settings", "Settings", "EnvironmentMode", "FulfillmentError"]
