#!/usr/bin/env python3
"""
Approve escrow milestones customers have left unanswered past the deadline.
Meant to run from cron; each approved milestone is committed on its own.
"""
from tailorhub import create_app
from tailorhub.extensions import db
from tailorhub.payments import StripeGateway
from tailorhub.services import escrow


def auto_approve_milestones():
    app = create_app()

    with app.app_context():
        print("🔄 Auto-approving overdue milestones...")
        gateway = StripeGateway(app.config.get("STRIPE_SECRET_KEY"), app.config.get("CURRENCY", "GHS"))
        report = escrow.auto_approve_due_milestones(
            db.session, gateway,
            window_hours=int(app.config.get("MILESTONE_AUTO_APPROVAL_HOURS", escrow.AUTO_APPROVAL_HOURS)),
        )

        for error in report.errors:
            print(f"❌ Order {error['order_id']}: {error['error']}")
        print(f"✅ Approved {report.auto_approved} of {report.processed} milestone(s)")


if __name__ == "__main__":
    auto_approve_milestones()
