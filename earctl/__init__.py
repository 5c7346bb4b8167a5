"""Control Nothing earbuds over their RFCOMM serial link."""

__version__ = "0.1.0"
