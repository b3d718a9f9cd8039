"""Shared test doubles for cadenza unit tests."""
