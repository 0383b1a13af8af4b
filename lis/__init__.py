"""
Lab analyzer integration: device channel mappings, the device
communication log, staging results and their reconciliation against
clinical orders.
"""
