"""
Container decorators and helpers.
"""

# `container` is an alias for `dataclass`. Type checkers do not recognize
# a plain assignment, hence the import.
from dataclasses import dataclass as container
from dataclasses import field as simple_field


def key_to_option(key: str) -> str:
    """
    Convert a key name to corresponding option name
    """

    return key.replace('_', '-')


def option_to_key(option: str) -> str:
    """
    Convert an option name to corresponding key name
    """

    return option.replace('-', '_')


__all__ = [
    'container',
    'key_to_option',
    'option_to_key',
    'simple_field',
    ]
