"""
Slot Stage Sync

Core modules:
- classifier: win amount -> tier, over an explicit TierConfig
- jackpot: progressive ledger with deterministic award selection
- timeline / scheduler: engine stage timestamps -> cancellable visual triggers
- controller: spin session state machine (Idle -> Spinning -> Presenting)
"""
