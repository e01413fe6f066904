"""
Text shown on the bots: price, change, direction and ratio strings.

Everything here is pure; the watcher feeds in a quote and the exchange rate
and gets back the strings to publish.
"""

from dataclasses import dataclass
from typing import Optional

from price_sources import PriceQuote

UP_ARROW   = "⬈"
DOWN_ARROW = "⬊"
CENT       = "¢"
PLUS_THRESHOLD = 0.0005


@dataclass
class Display:
    price: str
    change: str
    percent: str
    increase: bool
    decorator: str


def format_crypto_price(price: float, decimals: Optional[int] = None) -> str:
    if decimals is not None:
        return f"{price:.{decimals}f}"
    if price < 0.01:
        cents = price * 100
        # extra precision for sub-0.001¢ coins, judged on the dollar price
        if price < 0.00001:
            return f"{cents:.8f}{CENT}"
        return f"{cents:.6f}{CENT}"
    if price < 1.0:
        return f"{price:.3f}"
    return f"{price:.2f}"


def format_equity_price(price: float, decimals: Optional[int] = None) -> str:
    return f"{price:.{2 if decimals is None else decimals}f}"


def format_change(change: float) -> str:
    return f"{change:.2f}"


def format_percent(percent: float) -> str:
    text = f"{percent:.2f}%"
    if percent >= PLUS_THRESHOLD:
        text = "+" + text
    return text


def strip_percent(text: str) -> str:
    return text[:-1] if text.endswith("%") else text


def is_increase(change: str) -> bool:
    # the rendered string decides, so "-0.00" reads as a decrease
    return not change.startswith("-")


def pick_decorator(increase: bool, custom: str = "") -> str:
    if custom:
        return custom
    decorator = DOWN_ARROW
    if increase:
        decorator = UP_ARROW
    return decorator


def render(quote: PriceQuote, rate: float, crypto: bool, decimals: Optional[int] = None,
           decorator: str = "") -> Display:
    """Apply the exchange rate to a quote and format it for display."""
    price = quote.price * rate
    change = format_change(quote.change * rate)
    if crypto:
        shown = format_crypto_price(price, decimals)
    else:
        shown = format_equity_price(price, decimals)
    increase = is_increase(change)
    return Display(
        price=shown,
        change=change,
        percent=format_percent(quote.change_percent),
        increase=increase,
        decorator=pick_decorator(increase, decorator),
    )


def format_pair(price: float, pair_price: float, name: str, pair_name: str, flip: bool = False) -> str:
    """Ratio of two coins, e.g. "0.0712 ETH/BTC"."""
    if flip:
        ratio, label = pair_price / price, f"{pair_name}/{name}"
    else:
        ratio, label = price / pair_price, f"{name}/{pair_name}"
    if ratio < 0.1:
        return f"{ratio:.4f} {label}"
    return f"{ratio:.2f} {label}"
