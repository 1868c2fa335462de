#!/usr/bin/env python3
"""
Multi-indicator futures scanner/trader.

How to run:
- Ensure .env contains BINANCE_API_KEY and BINANCE_API_SECRET, then `python3 main.py`
- Testnet: `python3 main.py --testnet`
- Exchange-side TP/SL instead of the PnL guard: `python3 main.py --exit-mode protective`
"""
from futures_bot.cli import main

if __name__ == "__main__":
    main()
