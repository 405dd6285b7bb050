"""Client core: persistence, HTTP, resources and the workspace session."""

from odzai.client.app import OdzaiClient, build_client, open_client
from odzai.client.http import ApiClient
from odzai.client.resources import CollectionResource, DataResource, ItemResource, ResourceCache
from odzai.client.storage import Storage
from odzai.client.workspace import WorkspaceSession

__all__ = [
    "ApiClient",
    "CollectionResource",
    "DataResource",
    "ItemResource",
    "OdzaiClient",
    "ResourceCache",
    "Storage",
    "WorkspaceSession",
    "build_client",
    "open_client",
]
