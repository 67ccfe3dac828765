"""Application package for the medical training backend.

This package exposes the service, repository, access-control and model
modules used by the FastAPI application in `medtrainer.main`. Individual
modules contain the concrete implementations and documentation.
"""
