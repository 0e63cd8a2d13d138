"""HTTP access to the analysis service.

This module provides the REST collaborators the chat client depends on:
- Client: session history and attached datasets (ApiClient)
- Models: Pydantic schemas for request/response bodies
"""
