"""Script sandbox for operator-authored code."""

from chatflow.script.sandbox import ScriptMode, ScriptResult, ScriptSandbox, VariableMutation

__all__ = ["ScriptMode", "ScriptResult", "ScriptSandbox", "VariableMutation"]
