"""
Installation requests module.

Lifecycle: requested -> assigned -> in_progress -> completed, with cancel
allowed from any open state. Every transition is appended to the request history.
"""
