#!/usr/bin/env python3
"""
Drop Leaves — утилита подготовки листьев для merkle drop на Starknet
(лист = [recipient, index, amount, item_type(, token_address)] в виде felt).
Полезность: из filtered_cards.yaml строит стабильный список листьев для
построителя мерклового дерева и статистику по типам наград.
"""
import argparse, csv, io, json, os, re, sys, tempfile
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import yaml
from eth_utils import keccak, remove_0x_prefix, to_hex, to_int

# ---------- Errors ----------
class DropError(ValueError):
    """Base for every data-validation failure; ``index``/``entry`` are set by assemble()."""
    index: Optional[int] = None
    entry = None

class MalformedDescriptor(DropError):
    pass

class UnknownSymbol(DropError):
    pass

class InvalidAddress(DropError):
    pass

class AddressOutOfRange(DropError):
    pass

class EmptyDataset(DropError):
    pass

class MissingTokenAddress(DropError):
    pass

class ConfigError(DropError):
    pass

# ---------- Constants ----------
FIELD_PRIME = 2**251 + 17 * 2**192 + 1
MYSTERY_FRONT = "MYSTERY_ASSET"
SEPARATOR = "_"
SHORT_STRING_MAX = 31

HEX_RE = re.compile(r"[0-9a-fA-F]+")
AMOUNT_RE = re.compile(r"[0-9]+")

class ItemType(Enum):
    ERC20 = "erc20"
    MYSTERY = "mystery"

# type tags the claim contract matches on in the token-address layout
CONTRACT_TAGS = {ItemType.ERC20: "ERC_20", ItemType.MYSTERY: "MYSTERY"}

class Layout(Enum):
    SYMBOL = "symbol"
    TOKEN_ADDRESS = "token-address"

class TokenInfo(NamedTuple):
    category: ItemType
    address: Optional[str]

DEFAULT_TOKEN_ADDRESSES = {
    "LORDS": "0x0124aeb495b947201f5faC96fD1138E326AD86195B98df6DEc9009158A533B49",
    "SURVIVOR": "0x042DD777885AD2C116be96d4D634abC90A26A790ffB5871E037Dd5Ae7d2Ec86B",
    "NUMS": "0x042DD777885AD2C116be96d4D634abC90A26A790ffB5871E037Dd5Ae7d2Ec86B",
    "PAPER": "0x042DD777885AD2C116be96d4D634abC90A26A790ffB5871E037Dd5Ae7d2Ec86B",
    "CREDITS": "0x0",
}

# ---------- Reward descriptor ----------
class ParsedDescriptor(NamedTuple):
    item_type: ItemType
    symbol: Optional[str]
    amount: str

    @property
    def category(self) -> str:
        if self.item_type is ItemType.MYSTERY:
            return ItemType.MYSTERY.value
        return self.symbol.lower()

    def front(self) -> str:
        if self.item_type is ItemType.MYSTERY:
            return MYSTERY_FRONT
        return f"{self.symbol}{SEPARATOR}{self.amount}"

def parse_front(front, tokens: Dict[str, TokenInfo]) -> ParsedDescriptor:
    """Parse ``SYMBOL_AMOUNT`` (or the mystery literal) against the token table.

    The split happens on the last separator: amounts are digits only, so a
    symbol may itself contain ``_``.
    """
    if not isinstance(front, str) or not front:
        raise MalformedDescriptor(f"front must be a non-empty string, got: {front!r}")
    if front == MYSTERY_FRONT:
        return ParsedDescriptor(ItemType.MYSTERY, None, "0")
    symbol, sep, amount = front.rpartition(SEPARATOR)
    if not sep:
        raise MalformedDescriptor(f"front has no '{SEPARATOR}' separator: {front!r}")
    if not symbol:
        raise MalformedDescriptor(f"front has an empty token symbol: {front!r}")
    if not AMOUNT_RE.fullmatch(amount):
        raise MalformedDescriptor(f"amount must be a non-negative integer string, got: {amount!r}")
    if int(amount) >= FIELD_PRIME:
        raise MalformedDescriptor(f"amount does not fit a field element: {amount}")
    info = tokens.get(symbol)
    if info is None:
        raise UnknownSymbol(f"token symbol {symbol!r} is not configured")
    return ParsedDescriptor(info.category, symbol, amount)

# ---------- Felt encoding ----------
def normalize_address(addr) -> str:
    if not isinstance(addr, str):
        raise InvalidAddress(f"address must be string, got: {addr!r}")
    digits = remove_0x_prefix(addr)
    if not HEX_RE.fullmatch(digits):
        raise InvalidAddress(f"Invalid hex address: {addr!r}")
    value = int(digits, 16)
    if value >= FIELD_PRIME:
        raise AddressOutOfRange(f"address does not fit a field element: {addr}")
    return to_hex(value)

def short_string(text: str) -> int:
    if not text or len(text) > SHORT_STRING_MAX or not text.isascii():
        raise ConfigError(f"not an encodable short string: {text!r}")
    return to_int(text.encode("ascii"))

# ---------- Leaves ----------
class LeafRecord(NamedTuple):
    recipient: str
    index: int
    amount: str
    item_type: str
    label: str
    token_address: Optional[str] = None

    def calldata(self) -> List[str]:
        """Field elements in the order the claim contract hashes them."""
        felts = [int(self.recipient, 16), self.index, int(self.amount), short_string(self.label)]
        if self.token_address is not None:
            felts.append(int(self.token_address, 16))
        return [str(f) for f in felts]

    def to_json(self) -> dict:
        out = {
            "recipient": self.recipient,
            "index": self.index,
            "amount": self.amount,
            "item_type": self.item_type,
        }
        if self.token_address is not None:
            out["token_address"] = self.token_address
        out["calldata"] = self.calldata()
        return out

class LeafBuilder:
    """Emits every leaf of one dataset in a single, explicitly chosen layout."""

    def __init__(self, layout: Layout, tokens: Dict[str, TokenInfo]):
        if not isinstance(layout, Layout):
            raise ValueError(f"layout must be one of {[l.value for l in Layout]}, got: {layout!r}")
        self.layout = layout
        self.tokens = tokens

    def build(self, recipient: str, index: int, desc: ParsedDescriptor) -> LeafRecord:
        if self.layout is Layout.SYMBOL:
            label = CONTRACT_TAGS[ItemType.MYSTERY] if desc.item_type is ItemType.MYSTERY else desc.symbol
            return LeafRecord(recipient, index, desc.amount, desc.category, label)
        label = CONTRACT_TAGS[desc.item_type]
        return LeafRecord(recipient, index, desc.amount, label.lower(), label,
                          self.token_address(desc))

    def token_address(self, desc: ParsedDescriptor) -> str:
        if desc.item_type is ItemType.MYSTERY:
            return "0x0"
        address = self.tokens[desc.symbol].address
        if address is None:
            raise MissingTokenAddress(f"no token address configured for {desc.symbol}")
        return address

# ---------- Statistics ----------
class Statistics(NamedTuple):
    total: int
    by_category: Dict[str, int]
    by_front: Dict[str, int]
    by_item_type: Dict[str, int]
    excluded: int = 0

    def percentage(self, count: int) -> str:
        pct = Decimal(count * 100) / Decimal(self.total)
        return str(pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

    def to_json(self) -> dict:
        def table(counts):
            return {k: {"count": c, "percentage": self.percentage(c)} for k, c in counts.items()}
        return {
            "total": self.total,
            "excluded": self.excluded,
            "by_category": table(self.by_category),
            "by_front": table(self.by_front),
            "by_item_type": table(self.by_item_type),
        }

def _ranked(counts: Dict[str, int]) -> Dict[str, int]:
    return dict(sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])))

def aggregate(descriptors: Sequence[ParsedDescriptor], excluded: int = 0) -> Statistics:
    """Fold parsed descriptors into counts.

    ``excluded`` is the number of entries the caller chose to drop before
    parsing succeeded; they count towards ``total`` but not ``by_category``.
    """
    total = len(descriptors) + excluded
    if total == 0:
        raise EmptyDataset("no entries to aggregate")
    by_category: Dict[str, int] = {}
    by_front: Dict[str, int] = {}
    by_item_type: Dict[str, int] = {}
    for d in descriptors:
        by_item_type[d.item_type.value] = by_item_type.get(d.item_type.value, 0) + 1
        by_category[d.category] = by_category.get(d.category, 0) + 1
        front = d.front()
        by_front[front] = by_front.get(front, 0) + 1
    return Statistics(total, _ranked(by_category), _ranked(by_front), _ranked(by_item_type), excluded)

# ---------- Dataset ----------
class RawEntry(NamedTuple):
    address: str
    front: str

def assemble(entries: Sequence[RawEntry], builder: LeafBuilder) -> Tuple[List[LeafRecord], Statistics]:
    if not entries:
        raise EmptyDataset("No cards in input")
    leaves: List[LeafRecord] = []
    descriptors: List[ParsedDescriptor] = []
    for i, entry in enumerate(entries):
        try:
            desc = parse_front(entry.front, builder.tokens)
            recipient = normalize_address(entry.address)
            leaves.append(builder.build(recipient, i, desc))
        except DropError as e:
            e.index, e.entry = i, entry
            raise
        descriptors.append(desc)
    return leaves, aggregate(descriptors)

def survey(entries: Sequence[RawEntry], tokens: Dict[str, TokenInfo]) -> Statistics:
    """Tolerant counterpart of assemble(): unparseable fronts are excluded, not fatal."""
    descriptors: List[ParsedDescriptor] = []
    excluded = 0
    for i, entry in enumerate(entries):
        try:
            descriptors.append(parse_front(entry.front, tokens))
        except DropError as e:
            excluded += 1
            sys.stderr.write(f"[WARN] card #{i} excluded: {e}\n")
    return aggregate(descriptors, excluded=excluded)

# ---------- I/O ----------
def load_cards(path: str) -> List[RawEntry]:
    data = _load_yaml(path)
    if not isinstance(data, dict) or not isinstance(data.get("cards"), list):
        raise ConfigError(f"{path}: expected a mapping with a 'cards' list")
    out = []
    for card in data["cards"]:
        if not isinstance(card, dict):
            raise ConfigError(f"{path}: card #{len(out)} is not a mapping")
        out.append(RawEntry(card.get("address"), card.get("front")))
    return out

def _load_yaml(path: str):
    # BaseLoader keeps every scalar a string: 0777, 1_000 or 0xAB must reach
    # normalize_address exactly as written
    with open(path, encoding="utf-8") as f:
        return yaml.load(f, Loader=yaml.BaseLoader)

def _reserved_labels() -> set:
    return {MYSTERY_FRONT.lower(), ItemType.MYSTERY.value, CONTRACT_TAGS[ItemType.MYSTERY].lower()}

def token_table(addresses: Dict[str, Optional[str]]) -> Dict[str, TokenInfo]:
    tokens = {}
    categories: Dict[str, str] = {}
    for symbol, address in addresses.items():
        if not isinstance(symbol, str) or symbol.lower() in _reserved_labels():
            raise ConfigError(f"invalid token symbol: {symbol!r}")
        short_string(symbol)
        if symbol.lower() in categories:
            raise ConfigError(f"token symbols {categories[symbol.lower()]!r} and {symbol!r} "
                              f"collide in category {symbol.lower()!r}")
        categories[symbol.lower()] = symbol
        tokens[symbol] = TokenInfo(ItemType.ERC20, None if address is None else normalize_address(address))
    return tokens

def load_tokens(path: Optional[str]) -> Dict[str, TokenInfo]:
    if path is None:
        return token_table(DEFAULT_TOKEN_ADDRESSES)
    data = _load_yaml(path)
    if not isinstance(data, dict) or not isinstance(data.get("tokens"), dict):
        raise ConfigError(f"{path}: expected a mapping with a 'tokens' mapping")
    addresses = {}
    for symbol, entry in data["tokens"].items():
        entry = entry or {}
        if not isinstance(entry, dict):
            raise ConfigError(f"{path}: token {symbol} must be a mapping")
        if entry.get("type", ItemType.ERC20.value) != ItemType.ERC20.value:
            raise ConfigError(f"{path}: token {symbol} has unsupported type {entry['type']!r}")
        addresses[symbol] = entry.get("address")
    return token_table(addresses)

def render_leaves(leaves: Sequence[LeafRecord]) -> str:
    return json.dumps([leaf.to_json() for leaf in leaves], indent=2) + "\n"

def digest(text: str) -> str:
    return "0x" + keccak(text.encode("utf-8")).hex()

def write_outputs_atomic(outputs: Sequence[Tuple[str, str]]):
    """Write ``(text, path)`` pairs so that either all of them land or none do.

    Every file is staged next to its target first; targets are only replaced
    once all staging succeeded, and already replaced targets are removed if a
    later replace fails.
    """
    staged: List[Tuple[str, str]] = []
    try:
        for text, path in outputs:
            target_dir = os.path.dirname(os.path.abspath(path))
            fd, tmp = tempfile.mkstemp(dir=target_dir, prefix=".tmp-", suffix=".json")
            staged.append((tmp, path))
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                f.write(text)
            os.chmod(tmp, 0o644)
    except BaseException:
        for tmp, _ in staged:
            os.unlink(tmp)
        raise
    replaced: List[str] = []
    try:
        for tmp, path in staged:
            os.replace(tmp, path)
            replaced.append(path)
    except BaseException:
        for tmp, path in staged:
            if path in replaced:
                os.unlink(path)
            elif os.path.exists(tmp):
                os.unlink(tmp)
        raise

def write_json_atomic(text: str, path: str):
    write_outputs_atomic([(text, path)])

def render_stats_csv(stats: Statistics) -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(["Front", "Count", "Percentage"])
    for front, count in stats.by_front.items():
        w.writerow([front, count, stats.percentage(count)])
    return buf.getvalue()

def print_stats(stats: Statistics):
    print(f"Total cards: {stats.total}")
    if stats.excluded:
        print(f"Excluded:    {stats.excluded}")
    for title, counts in (("By item type", stats.by_item_type),
                          ("By category", stats.by_category), ("By front", stats.by_front)):
        print(f"\n{title}:")
        for name, count in counts.items():
            print(f"  {name:<43} {count:>7} {stats.percentage(count) + '%':>10}")

# ---------- Commands ----------
def cmd_sample(args):
    sample = {"cards": [
        {"address": "0x1111111111111111111111111111111111111111", "front": "CREDITS_150000000000000000000"},
        {"address": "0x2222222222222222222222222222222222222222", "front": "LORDS_75000000000000000000"},
        {"address": "0x3333333333333333333333333333333333333333", "front": "MYSTERY_ASSET"},
    ]}
    with open(args.out, "w", encoding="utf-8") as f:
        yaml.safe_dump(sample, f, sort_keys=False)
    print(f"Sample cards written to {args.out}")

def _build(args):
    builder = LeafBuilder(Layout(args.layout), load_tokens(args.tokens))
    leaves, stats = assemble(load_cards(args.cards), builder)
    return leaves, stats, render_leaves(leaves)

def cmd_build(args):
    leaves, stats, text = _build(args)
    stats_json = dict(stats.to_json(), layout=args.layout, digest=digest(text))
    stats_text = json.dumps(stats_json, indent=2) + "\n"
    write_outputs_atomic([(text, args.out), (stats_text, args.stats_out)])
    print("Sample entries (first 5):")
    for leaf in leaves[:5]:
        print(json.dumps(leaf.to_json()))
    print()
    print_stats(stats)
    print()
    print("Leaves digest:", stats_json["digest"])
    print(f"Wrote {args.out} ({len(leaves)} leaves) and {args.stats_out}")

def cmd_stats(args):
    stats = survey(load_cards(args.cards), load_tokens(args.tokens))
    print_stats(stats)
    if args.json:
        write_json_atomic(json.dumps(stats.to_json(), indent=2) + "\n", args.json)
        print(f"Wrote {args.json}")
    if args.csv:
        with open(args.csv, "w", encoding="utf-8", newline="") as f:
            f.write(render_stats_csv(stats))
        print(f"Wrote {args.csv}")

def cmd_lookup(args):
    with open(args.json, "r", encoding="utf-8") as f:
        leaves = json.load(f)
    addr = normalize_address(args.address)
    found = [leaf for leaf in leaves if leaf["recipient"] == addr]
    if not found:
        print("Address not found in leaves"); sys.exit(1)
    print(json.dumps(found, indent=2))

def cmd_check(args):
    _, _, text = _build(args)
    with open(args.json, "r", encoding="utf-8", newline="") as f:
        existing = f.read()
    ok = existing == text
    print("Leaves digest:", digest(text))
    print("Matches existing file:", ok)
    if not ok: sys.exit(1)

def _add_build_args(p):
    p.add_argument("--cards", required=True, help="YAML file with a 'cards' list")
    p.add_argument("--layout", required=True, choices=[l.value for l in Layout])
    p.add_argument("--tokens", help="YAML token table (defaults to the built-in table)")

def main(argv=None):
    ap = argparse.ArgumentParser(description="Drop Leaves (Starknet merkle drop input)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("sample", help="write sample cards YAML")
    p.add_argument("--out", default="sample_cards.yaml")
    p.set_defaults(func=cmd_sample)

    p = sub.add_parser("build", help="build leaves JSON & stats JSON from cards YAML")
    _add_build_args(p)
    p.add_argument("--out", default="merkle-drop-data.json")
    p.add_argument("--stats-out", default="merkle-drop-stats.json")
    p.set_defaults(func=cmd_build)

    p = sub.add_parser("stats", help="report front/category distribution, skipping bad cards")
    p.add_argument("--cards", required=True)
    p.add_argument("--tokens")
    p.add_argument("--json")
    p.add_argument("--csv")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("lookup", help="print the leaves of an address")
    p.add_argument("--json", default="merkle-drop-data.json")
    p.add_argument("--address", required=True)
    p.set_defaults(func=cmd_lookup)

    p = sub.add_parser("check", help="rebuild from cards and compare with an existing leaves JSON")
    _add_build_args(p)
    p.add_argument("--json", default="merkle-drop-data.json")
    p.set_defaults(func=cmd_check)

    args = ap.parse_args(argv)
    try:
        args.func(args)
    except DropError as e:
        where = "" if e.index is None else f"card #{e.index} {tuple(e.entry)}: "
        sys.stderr.write(f"[ERROR] {type(e).__name__}: {where}{e}\n")
        sys.exit(1)
    except OSError as e:
        sys.stderr.write(f"[ERROR] {type(e).__name__}: {e}\n")
        sys.exit(1)

if __name__ == "__main__":
    main()
