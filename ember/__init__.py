from ember.ember_config import EngineConfig
from ember.ember_datatypes import Char, FnPtr, InclusiveRange, SharedCell, Timestamp
from ember.ember_errors import (
    AmbiguousMatch, AmbiguousOverload, ContractViolation, DispatchError, EmberError,
    FunctionNotFound, IndexOutOfBounds, InvalidFunctionName, NativeError, NestedEvalError,
    NoMatchingOverload, ParseError, RecursionLimit, RegistrationError, ScriptThrow,
    TypeMismatch, VariableNotFound,
)
from ember.ember_interpreter import CallContext
from ember.ember_registry import FnSignature, Registry
from ember.ember_runtime import Engine, ExecutionResult, ScriptRunner, ember_fn
from ember.ember_scope import Scope
