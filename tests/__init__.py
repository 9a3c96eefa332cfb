"""Test suite for officesync.

Unit tests cover role resolution, the invite state machine, the state
mirror, builder mode, the datastore adapters and video room provisioning.
To run the tests, execute `pytest` from the project root.
"""
