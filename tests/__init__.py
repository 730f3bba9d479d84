"""
Tests package - test suite for the Dex operator.

Contains:
- unit/: Unit tests for individual components against an in-memory store
"""
