"""
TFS User Sync - Copy the valid users of a Team Foundation Server into a group or team on another server.

This package collects the members of every collection's Project Collection
Valid Users group on a source server and adds them, after operator
confirmation, to a group or team on a target collection via the TFS REST API.
"""

__version__ = "1.0.0"
__author__ = "TFS Sync Team"
