"""hostmesh: connection orchestration for one host receiving many participant streams."""

__version__ = "0.1.0"
