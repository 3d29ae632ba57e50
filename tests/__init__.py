"""Test suite for omni-upgrades."""
