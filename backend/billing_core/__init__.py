"""
Billing core: subscription billing reconciliation across Razorpay, Google Play
and the App Store.
"""

__version__ = "0.1.0"
