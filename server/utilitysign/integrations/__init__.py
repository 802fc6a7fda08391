"""
Integration modules for UtilitySign

Contains the clients and handlers for external systems:
- Backend request gateway (orders, documents, signing, BankID identity)
- Signing provider webhooks (verification, parsing, delivery log)
"""
