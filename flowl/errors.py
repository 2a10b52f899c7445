from typing import Optional

# Rule identifiers carried by parse errors
ERR_TOKEN_NUM_IN_LINE = "token number not match"
ERR_TOKEN_TYPE = "token type not match"
ERR_TOKEN_VALUE = "token value not match"
ERR_TOKEN_REGEX = "token regex not match"
ERR_TOKEN_CHARACTER_ILLEGAL = "token character illegal"

ERR_STATEMENT_UNKNOWN = "unknown statement"
ERR_MAP_KV_ILLEGAL = "map kv format illegal"
ERR_LIST_ELEM_ILLEGAL = "list element format illegal"
ERR_STATEMENT_INFER_FAILED = "statement infer failed"
ERR_STATEMENT_TOO_MANY = "statement too many"
ERR_INCOMPLETE_SOURCE = "incomplete source"

ERR_VARIABLE_FORMAT = "variable format illegal"
ERR_VARIABLE_NAME_EMPTY = "variable name is empty"
ERR_VARIABLE_NAME_DUPLICATED = "variable name is duplicated"
ERR_VARIABLE_NOT_DEFINED = "variable not defined"
ERR_VARIABLE_HAS_CYCLE = "variable has cycle"
ERR_VARIABLE_VALUE_TYPE = "variable's value type illegal"

ERR_IS_KEYWORD = "is keyword"
ERR_IDENT_CONFLICT = "identifier conflict"


class FlowlError(Exception):
    pass


class ParseError(FlowlError):
    """Raised at the first rule violation found in a flowl source.

    The message always starts with the source line, then the rule that was
    broken, then a short detail naming the offending token.
    """
    rule = "parse error"

    def __init__(self, line: int, detail: str = "", rule: Optional[str] = None):
        self.line = line
        self.detail = detail
        if rule is not None:
            self.rule = rule
        super().__init__(f"{line}: {self.rule}: {detail}")


class TokenError(ParseError):
    rule = ERR_TOKEN_TYPE


class StatementError(ParseError):
    rule = ERR_STATEMENT_UNKNOWN


class VariableError(ParseError):
    rule = ERR_VARIABLE_NOT_DEFINED


class IdentConflictError(ParseError):
    rule = ERR_IDENT_CONFLICT


class EvaluationError(FlowlError):
    """Raised when an expression cannot be parsed or evaluated."""
    pass


class RuntimeFlowError(FlowlError):
    pass


class FunctionNotLoadedError(RuntimeFlowError):
    pass


class LoadedFunctionDuplicatedError(RuntimeFlowError):
    pass


class ConfiguredFunctionDuplicatedError(RuntimeFlowError):
    pass


class DriverNotFoundError(RuntimeFlowError):
    pass


class NodeReusedError(RuntimeFlowError):
    pass


class ManifestError(RuntimeFlowError):
    """Raised when a function manifest is missing or malformed."""
    pass


class ConditionIsFalse(RuntimeFlowError):
    """Internal sentinel: the gating condition of a node evaluated to false."""
    pass


class ExitFlow(RuntimeFlowError):
    """Raised by the `exit` directive without a message; ends the pass cleanly."""
    pass


class DirectiveError(RuntimeFlowError):
    pass


class StepError(RuntimeFlowError):
    def __init__(self, step: int, errors):
        self.step = step
        self.errors = list(errors)
        detail = "; ".join(str(e) for e in self.errors)
        super().__init__(f"occurred error at step {step}: {detail}")


class FlowStateError(RuntimeFlowError):
    pass


class FlowNotFoundError(RuntimeFlowError):
    pass


class FlowExistsError(RuntimeFlowError):
    pass


class FlowCancelledError(RuntimeFlowError):
    """Raised from exec_flow when the run was cancelled through the runtime."""
    pass
