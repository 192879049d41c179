"""
Feed Migration Package

A plan-driven engine for migrating partner feed files into PostgreSQL staging tables.

Modules:
- plan / plan_loader: Declarative migration plans and their YAML loader
- resolvers / lookups / registry: Pluggable column transforms and reference data
- row_processor: Raw row to typed staging record, or a row rejection
- feed_processor: Per data source load, batching to the stager
- phase_log: Load progress history
- post_processors / monitoring: Outbound exports and run status files
- run_migration: Engine orchestration and CLI entry point
"""

__version__ = "1.0.0"
__author__ = "Data Engineering Team"
