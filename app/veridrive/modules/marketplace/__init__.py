"""
Marketplace module: listings, search, market analysis and vehicle history reports.
"""
