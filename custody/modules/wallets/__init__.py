"""
Agent Wallets Module

Provisioning of the custodial agent wallet.
"""
