"""Plans de paiement et échéancier."""

from compta_obra.plans.tracker import ObligationsView, PaymentPlanTracker, split_installments

__all__ = ["ObligationsView", "PaymentPlanTracker", "split_installments"]
