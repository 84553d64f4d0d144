"""
Script runtime - runs user scripts that describe one implicit shape.

This module provides:
- Interpreter / run_script: execute a script and collect its drawn shape
- ExecutionContext: the single output slot and output scale of one run
- CapabilityRegistry: the builders a script can call
"""

from .context import (
    ExecutionContext,
    create_context,
)

from .builtins import (
    Capability,
    CapabilityRegistry,
    get_capability_registry,
)

from .interpreter import (
    Interpreter,
    ScriptResult,
    run_script,
    compile_script_source,
)

__all__ = [
    'ExecutionContext',
    'create_context',
    'Capability',
    'CapabilityRegistry',
    'get_capability_registry',
    'Interpreter',
    'ScriptResult',
    'run_script',
    'compile_script_source',
]
