from importlib import import_module

__all__ = [
    "ledger",
    "price_oracle",
    "PriceOracle",
    "trade_engine",
    "TradeEngine",
    "funding_service",
    "FundingService",
    "account_service",
    "AccountService",
]

_LAZY_EXPORTS = {
    "ledger": ("services.ledger", None),
    "price_oracle": ("services.price_oracle", "price_oracle"),
    "PriceOracle": ("services.price_oracle", "PriceOracle"),
    "trade_engine": ("services.trade_engine", "trade_engine"),
    "TradeEngine": ("services.trade_engine", "TradeEngine"),
    "funding_service": ("services.funding", "funding_service"),
    "FundingService": ("services.funding", "FundingService"),
    "account_service": ("services.accounts", "account_service"),
    "AccountService": ("services.accounts", "AccountService"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = module if attr_name is None else getattr(module, attr_name)
    globals()[name] = value
    return value
