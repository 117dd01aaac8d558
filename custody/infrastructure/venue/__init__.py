"""
Venue Collaborators

Interfaces of the ledger, transaction build, submission and signing
services, with HTTP clients and the local signers.
"""
