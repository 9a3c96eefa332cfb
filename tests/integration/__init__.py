"""Integration test package.

These tests exercise the end-to-end behaviour of officesync: invite
redemption through to a live mirror, and the HTTP API against a mocked
video provider. No network access is required.
"""
