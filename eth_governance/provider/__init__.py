"""JSON-RPC node management.

- Launch and drive mainnet fork simulators like
  :py:mod:`eth_governance.provider.anvil`
"""
