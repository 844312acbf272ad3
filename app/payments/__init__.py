"""
Payments app for event registrations.

This app handles:
- Checkout through any configured gateway (Stripe, Razorpay, Cashfree,
  Instamojo, Paytm, PayU, PhonePe, or the stub gateway)
- The payment ledger: one PaymentRecord per (provider, provider_payment_id)
- Installment plans and their due, overdue and paid lifecycle
- Webhook event handling
- Daily reconciliation against each gateway

Related apps:
    - events: Event (gateway configuration) and Registration

Usage:
    from payments.services import CheckoutService, PaymentPlanService

    # Start checkout for a registration
    result = CheckoutService.create_checkout(registration, success_url, cancel_url)

    # Split a fee into three installments
    plan = PaymentPlanService.create_plan(registration, 10000, 3, first_due_date)
"""
