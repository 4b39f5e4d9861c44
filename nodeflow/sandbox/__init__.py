"""Sandbox module for isolated evaluation of code and condition nodes."""

from nodeflow.sandbox.executor import CodeSandbox, ConditionSandbox, SandboxConfig

__all__ = ["CodeSandbox", "ConditionSandbox", "SandboxConfig"]
