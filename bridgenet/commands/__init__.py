"""Bridgenet CLI commands."""

from bridgenet.commands.launch import launch
from bridgenet.commands.stop import stop
from bridgenet.commands.test_cmd import test_cmd

__all__ = [
    "launch",
    "stop",
    "test_cmd",
]
