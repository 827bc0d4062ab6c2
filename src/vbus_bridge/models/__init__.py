"""Data models for parameter tables and discovered devices."""

from .device import DeviceInformation
from .parameters import ParameterEntry, ParameterResolver, ParameterTable, parse_index
