"""Binance USDT-M futures scanner/trader with a polling PnL guard."""

__version__ = "0.1.0"
