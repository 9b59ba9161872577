"""Exception hierarchy shared by the license pipeline."""


class LicensingError(Exception):
    """Base class for every error raised by fedlicense."""


class ConfigurationError(LicensingError):
    """Deployment misconfiguration: a secret or table is missing or malformed."""


class KeyUnavailable(ConfigurationError):
    """No license signing key is configured."""


class KeyFormatInvalid(ConfigurationError):
    """The configured signing key could not be decoded."""


class SigningFailed(LicensingError):
    """The signing backend rejected the operation."""


class InvalidSignature(LicensingError):
    """A webhook body does not match its signature header."""


class Unauthenticated(LicensingError):
    """A bearer token is missing, expired or otherwise invalid."""


class StoreError(LicensingError):
    """A key-value store read or write failed."""


class CanonicalizationError(LicensingError, ValueError):
    """A value cannot be rendered deterministically."""
