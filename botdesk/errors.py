from __future__ import annotations


class BotdeskError(RuntimeError):
    code = "error"


class MtapiError(BotdeskError):
    code = "bridge_error"


class TransportError(MtapiError):
    code = "transport_error"


class InvalidCredentials(MtapiError):
    code = "invalid_credentials"


class InvalidSession(MtapiError):
    code = "invalid_session"


class BridgeRejected(MtapiError):
    code = "bridge_rejected"


class NeverConnected(BotdeskError):
    code = "never_connected"


class PersistenceError(BotdeskError):
    code = "persistence_error"


class CredentialError(BotdeskError):
    code = "credential_error"


class AccountValidationError(ValueError):
    pass
