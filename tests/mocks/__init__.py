"""Test doubles for bridgenet tests."""
