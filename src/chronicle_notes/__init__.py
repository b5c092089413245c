"""
Chronicle Notes - the consistency core of a campaign note editor.

Notes live in a relational store and are shared between campaign members.
This package provides the edit-lock lease protocol, the bounded version
archive and the shared/private visibility filter on top of that store, plus
an MCP tool surface that exposes them to a host application.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("chronicle-notes")
except PackageNotFoundError:
    __version__ = "0.1.0"
