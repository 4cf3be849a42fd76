"""Storage services wired together by ``CabinetRuntime``."""
