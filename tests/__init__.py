"""Test suite for stackplan."""
