"""
Pipeline module: streaming result reassembly.

Provides:
- Row and the wire value codec
- FlowController: watermark backpressure
- PartialResultStream: resumable reassembly of chunked results
"""

from sessionmesh.pipeline.codec import (
    Row,
    decode_value,
    is_mergeable,
    merge_values,
)
from sessionmesh.pipeline.backpressure import (
    FlowState,
    FlowMetrics,
    FlowController,
)
from sessionmesh.pipeline.partial_result import PartialResultStream

__all__ = [
    "Row",
    "decode_value",
    "is_mergeable",
    "merge_values",
    "FlowState",
    "FlowMetrics",
    "FlowController",
    "PartialResultStream",
]
