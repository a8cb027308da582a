"""Core ledger, state machines and settlement"""
