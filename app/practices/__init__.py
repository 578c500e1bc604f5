"""
Practices app: tenants and the patients they bill.

Models:
    - Practice: A chiropractic practice (the tenant boundary)
    - Patient: A patient of one practice
    - StoredPaymentMethod: A tokenized card on file with a processor
"""
