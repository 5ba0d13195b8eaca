"""
Phasegate - phase-gated workflow engine.

- phasegate.core: errors, logging, settings, timestamps
- phasegate.orchestration: process definitions and the executor
- phasegate.cli: command-line interface
"""

__version__ = "0.1.0"
