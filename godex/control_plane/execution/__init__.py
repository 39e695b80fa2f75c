"""Execution pipeline for the control plane.

- **runner**: Run lifecycle (spawn / external runs -> events -> finalize)
- **output**: Chunk normalisation, snippets, needs-input detection, summaries
- **notify**: Notification policy and ntfy delivery (detached)
- **commands**: Argument vectors for workspace commands
- **turns**: Companion turn relay into an external run
"""
