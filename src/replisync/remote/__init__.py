"""
Remote collaborators consumed by the engine.
"""

from .client import RemoteStore, RestRemoteStore, RetryingRemote
from .upload import AssetUploader, UploadResult

__all__ = [
    'RemoteStore',
    'RestRemoteStore',
    'RetryingRemote',
    'AssetUploader',
    'UploadResult',
]
