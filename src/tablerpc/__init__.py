"""
tablerpc - database-backed RPC core.

Declare models once; get migrations, a typed data access layer, an RPC
dispatcher and generated client stubs from the same schema registry.
"""

from tablerpc._version import get_version

__version__ = get_version()
