# Execution package: child processes and the line readers that drain their pipes.

from nodule.execution.line_io import LineIO, LineSplitter
from nodule.execution.process import Process, ProcessStatus
from nodule.execution.stdio import Stdio

__all__ = [
    "LineIO",
    "LineSplitter",
    "Process",
    "ProcessStatus",
    "Stdio",
]
