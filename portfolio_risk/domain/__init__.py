"""Domain models shared by providers, engines and the cache.

Usage:
    from portfolio_risk.domain.price import PriceSeries
    from portfolio_risk.domain.classification import classify_instrument
"""
