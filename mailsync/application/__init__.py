"""Application layer: DTOs, interfaces and services.

Depends only on domain and protocol definitions (DIP).
Infrastructure implements the interfaces (repositories, vault, adapters).
"""
