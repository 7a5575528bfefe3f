"""Client library and command-line tool for Calnex Sentinel appliances."""

__version__ = "0.1.0"