"""Domain operations for the control plane.

Each module provides async functions (or a small service class) that
encapsulate store access and business rules.  Managers raise domain
exceptions (``LookupError``, ``ValueError`` subclasses), never HTTP
exceptions -- that translation is the router's responsibility.
"""
