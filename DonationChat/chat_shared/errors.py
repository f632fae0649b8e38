class ChatError(Exception):
    pass


class InvalidArgumentError(ChatError):
    def __init__(self, argument, value=None):
        self.argument = argument
        self.value = value
        message = f"Invalid {argument}: {value!r}"
        super().__init__(message)


class DecryptionFailureError(ChatError):
    def __init__(self, message_id, reason):
        self.message_id = message_id
        self.reason = reason
        message = f"Cannot decrypt message {message_id}: {reason}"
        super().__init__(message)


class NetworkFailureError(ChatError):
    def __init__(self, operation, detail=""):
        self.operation = operation
        self.detail = detail
        message = f"{operation} failed: {detail}" if detail else f"{operation} failed"
        super().__init__(message)


class ChannelUnavailableError(ChatError):
    def __init__(self, detail):
        self.detail = detail
        message = f"Channel unavailable: {detail}"
        super().__init__(message)


class CacheUnavailableError(ChatError):
    def __init__(self, operation):
        self.operation = operation
        message = f"Session cache unavailable during {operation}"
        super().__init__(message)


class ServerDatabaseError(NetworkFailureError):
    pass


class UserNotFoundError(ServerDatabaseError):
    def __init__(self, email):
        self.email = email
        super().__init__("resolve_user_id", f"no stakeholder for {email}")


class AppendError(ServerDatabaseError):
    def __init__(self, detail):
        super().__init__("append_message", detail)


class FetchError(ServerDatabaseError):
    def __init__(self, detail):
        super().__init__("fetch_conversations", detail)


class ReceiptError(ServerDatabaseError):
    def __init__(self, operation, detail):
        super().__init__(operation, detail)


class ConnectionPoolError(ServerDatabaseError):
    def __init__(self, detail):
        super().__init__("connection_pool", detail)
