"""Configuration system for devflow.

Type-safe settings built on Pydantic: the remote gateway, branch policies,
conflict patterns, coordination switches, release defaults and the
repositories registered at startup. Loaded from YAML with ``${ENV}``
interpolation.
"""
