class ErrorCode:
    UNRECOVERABLE_ARGUMENTS = "unrecoverable_arguments"
    TRUNCATED_STREAM = "truncated_stream"
    BACKEND_PROTOCOL_ERROR = "backend_protocol_error"
    BACKEND_API_ERROR = "backend_api_error"


class FinishReason:
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALL = "tool_call"


class Role:
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
