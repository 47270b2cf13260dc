# src/beacon/relay/__init__.py
"""
Anonymous relay path.

  - invoker: runs the external relay command once per record, bounded by a timeout
  - transcript: parses the relay's labeled-line output and decides the outcome
"""
