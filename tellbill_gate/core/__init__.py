"""
Core modules for the TellBill plan gate.

This package contains the capability table, capability resolution, usage
accounting, entitlement synchronization and the feature gate.
"""
