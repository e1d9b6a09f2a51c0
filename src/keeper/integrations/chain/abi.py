"""Minimal ABIs for the contracts the keeper reads from and writes to."""


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [
            {"name": arg, "type": typ, "indexed": indexed}
            for arg, typ, indexed in inputs
        ],
    }


def _function(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[tuple[str, str]],
    mutability: str,
) -> dict:
    return {
        "name": name,
        "type": "function",
        "stateMutability": mutability,
        "inputs": [{"name": arg, "type": typ} for arg, typ in inputs],
        "outputs": [{"name": arg, "type": typ} for arg, typ in outputs],
    }


INFRA_MARKET_ABI = [
    # Reads
    _function("status", [("tradingAddr", "address")], [("", "uint8"), ("", "uint64")], "view"),
    _function("winner", [("trading", "address")], [("", "bytes8")], "view"),
    _function("epochNumber", [("tradingAddr", "address")], [("", "uint256")], "view"),
    # Writes
    _function(
        "declare",
        [("tradingAddr", "address"), ("outcomes", "bytes8[]"), ("feeRecipient", "address")],
        [("", "uint256")],
        "nonpayable",
    ),
    _function(
        "close",
        [("tradingAddr", "address"), ("feeRecipient", "address")],
        [("", "uint256")],
        "nonpayable",
    ),
    _function("escape", [("tradingAddr", "address")], [], "nonpayable"),
    # Events
    _event(
        "MarketCreated2",
        [
            ("incentiveSender", "address", False),
            ("tradingAddr", "address", True),
            ("desc", "bytes32", False),
            ("callDeadline", "uint64", False),
            ("launchTs", "uint64", False),
        ],
    ),
    _event(
        "CallMade",
        [
            ("tradingAddr", "address", True),
            ("winner", "bytes8", False),
            ("incentiveRecipient", "address", False),
        ],
    ),
    _event(
        "InfraMarketClosed",
        [
            ("incentiveRecipient", "address", False),
            ("tradingAddr", "address", True),
            ("winner", "bytes8", False),
        ],
    ),
    _event("CampaignEscaped", [("tradingAddr", "address", True)]),
    _event(
        "CommitmentRevealed",
        [
            ("trading", "address", True),
            ("revealer", "address", False),
            ("caller", "address", False),
            ("outcome", "bytes8", False),
            ("bal", "uint256", False),
        ],
    ),
    _event(
        "Declared",
        [
            ("trading", "address", True),
            ("winningOutcome", "bytes8", False),
            ("feeRecipient", "address", False),
        ],
    ),
]

BATCH_SWEEPER_ABI = [
    _function(
        "sweepBatch",
        [
            ("infraMarket", "address"),
            ("tradingAddr", "address"),
            ("epochNo", "uint256"),
            ("victims", "address[]"),
            ("feeRecipient", "address"),
        ],
        [("", "uint256")],
        "nonpayable",
    ),
]
