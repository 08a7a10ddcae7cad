"""
Exception taxonomy for the Ember runtime.

Registration errors are raised while the host is wiring up an engine and are
fatal to startup. Dispatch errors are raised per call and are always
recoverable: scripts can catch them with `try`/`catch`, hosts can branch on
the concrete class.
"""
from typing import Any, Optional, Sequence


class EmberError(Exception):
    """Base class for every error raised by the engine."""
    def __init__(self, message: str = "", *, loc: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.loc = loc

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        return self.message


# =================================================================
# Registration-time errors
# =================================================================

class RegistrationError(EmberError):
    pass


class AmbiguousOverload(RegistrationError):
    """Two registrations share a name, arity and parameter-type tuple."""
    def __init__(self, fn_name: str, param_types: Sequence[Optional[str]]):
        shown = ", ".join(t or "*" for t in param_types)
        super().__init__(f"Function '{fn_name}({shown})' is already registered with the same parameter types")
        self.fn_name = fn_name
        self.param_types = tuple(param_types)


class ContractViolation(RegistrationError):
    """A host type cannot be carried inside a Value."""
    def __init__(self, type_name: str, clause: str):
        super().__init__(f"Type '{type_name}' violates the value contract: {clause}")
        self.type_name = type_name
        self.clause = clause


# =================================================================
# Dispatch errors
# =================================================================

class DispatchError(EmberError, TypeError):
    def __init__(self, message: str, fn_name: str, arity: int, arg_types: Sequence[str] = ()):
        super().__init__(message)
        self.fn_name = fn_name
        self.arity = arity
        self.arg_types = tuple(arg_types)

    def signature(self) -> str:
        if self.arg_types:
            return f"{self.fn_name}({', '.join(self.arg_types)})"
        return f"{self.fn_name}/{self.arity}"


class FunctionNotFound(DispatchError):
    def __init__(self, fn_name: str, arity: int, arg_types: Sequence[str] = ()):
        super().__init__(f"Function not found: {fn_name}/{arity}", fn_name, arity, arg_types)


class NoMatchingOverload(DispatchError):
    def __init__(self, fn_name: str, arity: int, arg_types: Sequence[str] = ()):
        shown = ", ".join(arg_types)
        super().__init__(f"No overload of '{fn_name}' accepts ({shown})", fn_name, arity, arg_types)


class AmbiguousMatch(DispatchError):
    def __init__(self, fn_name: str, arity: int, arg_types: Sequence[str] = (), candidates: int = 2):
        shown = ", ".join(arg_types)
        super().__init__(
            f"Ambiguous call to '{fn_name}({shown})': {candidates} overloads match equally well",
            fn_name, arity, arg_types,
        )
        self.candidates = candidates


# =================================================================
# Naming, variables and types
# =================================================================

class InvalidFunctionName(EmberError, NameError):
    def __init__(self, fn_name: Any):
        super().__init__(f"Invalid function name: {fn_name!r}")
        self.fn_name = fn_name


class VariableNotFound(EmberError, NameError, KeyError):
    def __init__(self, name: str):
        super().__init__(f"Variable not found: {name}")
        self.name = name


class TypeMismatch(EmberError, TypeError):
    def __init__(self, expected: str, actual: str, message: Optional[str] = None):
        super().__init__(message or f"Expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ParseError(EmberError, SyntaxError):
    def __init__(self, message: str, *, line: Optional[int] = None, col: Optional[int] = None):
        loc = {'line': line, 'col': col} if line is not None else None
        super().__init__(message, loc=loc)


class IndexOutOfBounds(EmberError, IndexError):
    def __init__(self, index: int, length: int):
        super().__init__(f"Index {index} out of bounds for length {length}")
        self.index = index
        self.length = length


class NativeError(EmberError):
    """A host function failed with an ordinary Python exception."""
    def __init__(self, fn_name: str, error: BaseException):
        super().__init__(f"Error in function '{fn_name}': {error}")
        self.fn_name = fn_name
        self.error = error


class RecursionLimit(EmberError, RecursionError):
    def __init__(self, limit: int):
        super().__init__(f"Maximum call depth of {limit} exceeded")
        self.limit = limit


# =================================================================
# Script-visible errors
# =================================================================

class ScriptThrow(EmberError):
    """Raised by the `throw` statement; carries the thrown value."""
    def __init__(self, value: Any):
        super().__init__(f"Runtime error: {value!r}" if not isinstance(value, str) else value)
        self.value = value


class NestedEvalError(EmberError):
    """Wraps an error raised by text run through `eval`, unmodified."""
    def __init__(self, error: BaseException):
        super().__init__(str(error))
        self.error = error

    @property
    def kind(self) -> str:
        inner = self.error
        return getattr(inner, 'kind', type(inner).__name__)


def unwrap_nested(error: BaseException) -> BaseException:
    """Strip any number of NestedEvalError layers."""
    while isinstance(error, NestedEvalError):
        error = error.error
    return error
