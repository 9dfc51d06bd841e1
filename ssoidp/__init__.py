"""Identity provider: sessions, passwordless login, account linking and OAuth2/OIDC."""

__version__ = "0.1.0"
