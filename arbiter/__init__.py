"""Paper arbitrage core: detect, score, gate, execute, close and roll up PnL."""
