"""Install transactions over the store."""

from .coordinator import TransactionCoordinator, TransactionResult, write_link_manifest
from .producer import CallableProducer, ContentProducer, DirectoryProducer, ProducedContent

__all__ = [
    "CallableProducer",
    "ContentProducer",
    "DirectoryProducer",
    "ProducedContent",
    "TransactionCoordinator",
    "TransactionResult",
    "write_link_manifest",
]
