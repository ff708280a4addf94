"""
pricing.py — Pricing Engine

Pure computation of print costs from a shop's rate card. A file costs
`price_per_page x pages x copies`; an order costs the sum of its files.

Pricing is all-or-nothing: if any file's (print_type, paper_size) pair has no
rate, nothing is priced and `IncompleteRateCard` names every missing pair.
All arithmetic uses Decimal; floats never touch an amount.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from types import MappingProxyType

import pydantic
from sqlalchemy import select

from .db import RateCardEntry
from .errors import EmptyOrder, IncompleteRateCard, MissingRate, ValidationError
from .models import OrderFile, PaperSize, PrintType

CENT = Decimal("0.01")


def _config_key(print_type, paper_size):
    try:
        return PrintType(print_type), PaperSize(paper_size)
    except ValueError:
        raise ValidationError(f"Unknown print configuration: {print_type}/{paper_size}")


class RateCard:
    """
    Immutable price list of one shop, keyed by (print_type, paper_size).

    Args:
        shop_id (str): Owning shop.
        rates (dict): Mapping of (PrintType, PaperSize) to a positive price per page.

    Raises:
        ValidationError: If a price is not a positive amount in whole cents,
            or a key is not a known print configuration.
    """

    def __init__(self, shop_id, rates):
        normalized = {}
        for (print_type, paper_size), price in rates.items():
            key = _config_key(print_type, paper_size)
            try:
                price = Decimal(str(price))
            except InvalidOperation:
                price = None
            if price is None or not price.is_finite() or price <= 0:
                raise ValidationError(f"Rate for {key[0].value}/{key[1].value} must be positive")
            if price != price.quantize(CENT):
                raise ValidationError(f"Rate for {key[0].value}/{key[1].value} has more than two decimal places")
            normalized[key] = price
        self.shop_id = shop_id
        self._rates = MappingProxyType(normalized)

    def get(self, print_type, paper_size):
        return self._rates.get(_config_key(print_type, paper_size))

    def items(self):
        return self._rates.items()

    def __len__(self):
        return len(self._rates)


def load_rate_card(session, shop_id):
    """Reads the shop's rate card from the rate-card store."""
    rows = session.scalars(select(RateCardEntry).where(RateCardEntry.shop_id == shop_id)).all()
    return RateCard(shop_id, {(row.print_type, row.paper_size): row.price_per_page for row in rows})


def rate_for(card, print_type, paper_size):
    rate = card.get(print_type, paper_size)
    if rate is None:
        raise MissingRate(print_type, paper_size)
    return rate


def line_total(file, rate):
    return (rate * file.pages * file.copies).quantize(CENT, rounding=ROUND_HALF_UP)


def coerce_files(files):
    """
    Validates raw file configurations into immutable `OrderFile` values.

    Accepts `OrderFile` instances or plain dicts. Pages and copies must be
    integers of at least 1; numeric strings are coerced, fractions rejected.

    Raises:
        EmptyOrder: If no file is given.
        ValidationError: If any file is malformed, naming its position.
    """
    files = list(files or [])
    if not files:
        raise EmptyOrder("An order needs at least one file")
    result = []
    for index, file in enumerate(files):
        if isinstance(file, OrderFile):
            result.append(file)
            continue
        try:
            result.append(OrderFile.model_validate(file))
        except pydantic.ValidationError as e:
            problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError(f"File #{index + 1} is invalid", file_index=index, problems=problems)
    return result


def line_totals(files, card):
    files = coerce_files(files)
    missing = []
    for file in files:
        pair = (file.print_type, file.paper_size)
        if card.get(*pair) is None and pair not in missing:
            missing.append(pair)
    if missing:
        raise IncompleteRateCard(missing)
    return [line_total(file, rate_for(card, file.print_type, file.paper_size)) for file in files]


def order_total(files, card):
    return sum(line_totals(files, card), Decimal("0.00"))


def quote(session, shop_id, files):
    """Prices a manifest against the shop's current card without persisting anything."""
    card = load_rate_card(session, shop_id)
    totals = line_totals(files, card)
    return sum(totals, Decimal("0.00")), totals
