"""
Chain anchoring module.

- Solana memo transactions for vehicle registration, mileage and ownership transfer
- Custodial wallets (secret keys sealed at rest)
- Arweave document storage with a local copy of the bytes
"""
