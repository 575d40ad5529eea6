"""
Payments app: gateway orders, signature verification, webhooks and refunds
for order cycle participants.
"""
