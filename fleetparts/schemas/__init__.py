"""
schemas/ — Pydantic request models for the FleetParts API

Provides input validation, auto-generated OpenAPI docs, and
consistent error messages across all endpoints.
"""
