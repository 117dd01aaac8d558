"""
Trading Bots Module

Bot registration and the bot-facing delete endpoints.
"""
