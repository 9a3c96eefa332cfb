"""Web package for officesync.

Contains the FastAPI application that exposes video room provisioning over
HTTP, so browser clients never see the provider credential.

To start the web server from the CLI use:
    officesync serve --port 8000 --reload
"""
