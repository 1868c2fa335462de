import asyncio
import logging
from typing import List

from .errors import BotError
from .models import is_valid_symbol, normalize_symbol


async def select_candidates(session) -> List[str]:
    """Most liquid perpetuals in the configured quote currency, volume-descending."""
    cfg = session.config
    gateway = session.gateway
    try:
        instruments = await gateway.load_instruments()
        eligible = {
            i.symbol for i in instruments
            if i.active and i.perpetual and i.quote == cfg.quote_asset
        }
        logging.info(f"[DEBUG] {cfg.quote_asset} perpetual markets: {len(eligible)}")
        tickers = await gateway.fetch_tickers()
    except BotError as e:
        logging.error(f"❌ Failed to load trading pairs: {e}")
        return []

    volumes = [(t.symbol, t.quote_volume) for t in tickers if t.symbol in eligible]
    if not volumes:
        logging.warning("⚠️ No symbol has volume data")
        return []
    volumes.sort(key=lambda v: v[1], reverse=True)
    top = [sym for sym, _ in volumes[:cfg.top_volume_count]]
    logging.info(f"[DEBUG] Top {len(top)} by volume: {top}")

    selected: List[str] = []
    for symbol in top:
        try:
            candles = await gateway.fetch_candles(symbol, cfg.timeframe, cfg.min_candles)
            if len(candles) < cfg.min_candles:
                logging.warning(f"⚠️ Not enough candles for {symbol}: {len(candles)}")
                continue

            book = await gateway.fetch_order_book(symbol, cfg.order_book_levels)
            depth = book.depth()
            if depth < cfg.min_book_depth:
                logging.warning(f"⚠️ Order book too thin for {symbol}: {depth:,.0f}")
                continue
        except BotError as e:
            logging.warning(f"⚠️ Skipping {symbol}: {e}")
            continue

        clean = normalize_symbol(symbol)
        if not is_valid_symbol(clean):
            logging.warning(f"⚠️ Malformed symbol after normalizing: {symbol} -> {clean}")
            continue

        selected.append(clean)
        logging.info(f"[DEBUG] Added {clean}")
        if len(selected) >= cfg.max_candidates:
            break
        if cfg.request_pause > 0:
            await asyncio.sleep(cfg.request_pause)

    logging.info(f"✅ Selected {len(selected)} pairs: {selected}")
    return selected
