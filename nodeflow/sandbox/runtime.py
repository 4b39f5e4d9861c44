"""Child-process runtime for sandboxed code and condition evaluation.

Executed as ``python -I -c <this source>`` by ``nodeflow.sandbox.executor``.
It must only depend on the standard library. Protocol:

    stdin   {"mode": "code"|"condition", "source": str,
             "bindings": {...}, "memory_mb": int}
    stdout  {"ok": true, "value": ..., "logs": [...]}
            {"ok": false, "kind": "policy"|"error", "error": str, "logs": [...]}
"""

import ast
import datetime
import json
import math
import re
import sys
import types

FUNCTION_NAME = "node_main"

SAFE_BUILTINS = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "range": range,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "Exception": Exception,
    "KeyError": KeyError,
    "TypeError": TypeError,
    "ValueError": ValueError,
}

SAFE_MODULES = {
    "json": types.SimpleNamespace(loads=json.loads, dumps=json.dumps),
    "math": types.SimpleNamespace(
        **{name: getattr(math, name) for name in dir(math) if not name.startswith("_")}
    ),
    "re": types.SimpleNamespace(
        search=re.search,
        match=re.match,
        fullmatch=re.fullmatch,
        findall=re.findall,
        sub=re.sub,
        split=re.split,
        IGNORECASE=re.IGNORECASE,
        MULTILINE=re.MULTILINE,
    ),
    "datetime": types.SimpleNamespace(
        datetime=datetime.datetime,
        date=datetime.date,
        timedelta=datetime.timedelta,
        timezone=datetime.timezone,
    ),
}

FORBIDDEN_NODES = (
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
    ast.Yield,
    ast.YieldFrom,
    ast.Await,
    ast.AsyncFunctionDef,
    ast.AsyncFor,
    ast.AsyncWith,
)


class PolicyViolation(Exception):
    pass


def check_policy(tree: ast.AST) -> None:
    """Reject imports, scope escapes and any underscore-prefixed name."""
    for node in ast.walk(tree):
        if isinstance(node, FORBIDDEN_NODES):
            raise PolicyViolation(f"{type(node).__name__} is not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise PolicyViolation(f"Access to '{node.id}' is not allowed")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise PolicyViolation(f"Access to attribute '{node.attr}' is not allowed")
        if isinstance(node, (ast.FunctionDef, ast.ClassDef)) and node.name.startswith("_"):
            raise PolicyViolation(f"Definition of '{node.name}' is not allowed")


def is_none(value):
    return value is None


def is_empty(value):
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def has_key(value, key):
    return isinstance(value, dict) and key in value


def to_jsonable(value):
    if isinstance(value, (set, frozenset, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, list):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def compile_code(source):
    """Wrap statements in a function so ``return`` sets the node output."""
    body = source if source.strip() else "pass"
    indented = "\n".join("    " + line for line in body.splitlines())
    tree = ast.parse(f"def {FUNCTION_NAME}():\n{indented}\n", mode="exec")
    for statement in tree.body[0].body:
        check_policy(statement)
    return compile(tree, "<code-node>", "exec")


def compile_condition(source):
    tree = ast.parse(source.strip(), mode="eval")
    check_policy(tree)
    return compile(tree, "<condition-node>", "eval")


def limit_memory(memory_mb):
    if sys.platform == "win32" or not memory_mb:
        return
    import resource

    limit = memory_mb * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError):
        pass  # hard limit already lower than requested


def evaluate(request, logs):
    mode = request["mode"]
    bindings = request.get("bindings") or {}

    def capture_print(*args, sep=" ", end=""):
        logs.append(sep.join(str(a) for a in args) + end)

    namespace = dict(SAFE_MODULES)
    namespace["__builtins__"] = dict(SAFE_BUILTINS, print=capture_print)
    namespace.update(bindings)

    if mode == "condition":
        namespace["output"] = bindings.get("input")
        namespace.update(is_none=is_none, is_empty=is_empty, has_key=has_key)
        return bool(eval(compile_condition(request["source"]), namespace))

    exec(compile_code(request["source"]), namespace)
    return to_jsonable(namespace[FUNCTION_NAME]())


def main():
    logs = []
    try:
        request = json.loads(sys.stdin.buffer.read().decode("utf-8"))
        limit_memory(request.get("memory_mb"))
        response = {"ok": True, "value": evaluate(request, logs)}
    except (PolicyViolation, SyntaxError) as e:
        response = {"ok": False, "kind": "policy", "error": f"{type(e).__name__}: {e}"}
    except Exception as e:
        response = {"ok": False, "kind": "error", "error": f"{type(e).__name__}: {e}"}
    response["logs"] = logs
    sys.stdout.buffer.write(json.dumps(response).encode("utf-8"))
    sys.stdout.buffer.flush()


if __name__ == "__main__":
    main()
