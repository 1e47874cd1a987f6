from .registry import AccessRegistry, InMemoryWhitelistStore, RedisWhitelistStore, WhitelistStore

__all__ = ["AccessRegistry", "WhitelistStore", "InMemoryWhitelistStore", "RedisWhitelistStore"]
