"""Account token handling."""

from calmesh.auth.google import TokenVault, get_token_vault, init_token_vault, store_account_tokens

__all__ = ["TokenVault", "get_token_vault", "init_token_vault", "store_account_tokens"]
