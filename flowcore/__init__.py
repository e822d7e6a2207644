"""flowcore - Workflow Execution Core.

Executes trigger/action node graphs: named-variable propagation, template
interpolation, and durable, resumable, status-reporting runs.
"""

__version__ = "0.1.0"
