from chatdesk.client.api_client import ChatdeskClient, RemoteGenerator

__all__ = ["ChatdeskClient", "RemoteGenerator"]
