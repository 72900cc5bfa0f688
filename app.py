"""
app.py
Streamlit admin console for dues billing (organization administrators).
Run: streamlit run app.py
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pandas as pd
import streamlit as st

import auth
import billing_config
import billing_run
import catchup
import db
import memberships
import reminders
import settlement
import store
import utils
from errors import DuesError
from logging_config import configure_logging
from models import MANUAL_METHODS, MembershipStatus, PaymentType

st.set_page_config(page_title="Dues Billing Console", layout="wide")


def init_once():
    configure_logging()
    db.init_db(auth.hash_password("admin123"))


def require_login():
    if "logged_in" not in st.session_state:
        st.session_state.logged_in = False
    if "username" not in st.session_state:
        st.session_state.username = None


def logout():
    st.session_state.logged_in = False
    st.session_state.username = None
    st.success("Logged out.")


def login_screen():
    st.title("🔐 Dues Console Login")

    col1, col2 = st.columns([1, 1])
    with col1:
        username = st.text_input("Username", value="admin")
        password = st.text_input("Password", type="password")
        if st.button("Login", type="primary"):
            if auth.login(username.strip(), password):
                st.session_state.logged_in = True
                st.session_state.username = username.strip()
                st.rerun()
            else:
                st.error("Invalid username or password.")

    with col2:
        st.info(
            "First run creates a default admin:\n\n"
            "- username: **admin**\n"
            "- password: **admin123**\n\n"
            "You will be forced to change it on first login."
        )


def password_form(key: str) -> None:
    new1 = st.text_input("New password", type="password", key=f"{key}_1")
    new2 = st.text_input("Confirm new password", type="password", key=f"{key}_2")
    if st.button("Update password", type="primary", key=f"{key}_btn"):
        try:
            auth.change_password(st.session_state.username, new1, new2)
        except DuesError as e:
            st.error(str(e))
            return
        st.success("Password updated.")
        st.rerun()


def force_change_password_screen():
    st.title("⚠️ Change Password (Required)")
    st.warning("You must change the default password before using the console.")
    password_form("force")


# ---------- Helpers ----------

def rows_frame(rows) -> pd.DataFrame:
    return pd.DataFrame([dict(r) for r in rows])


def models_frame(items, columns: list[str]) -> pd.DataFrame:
    # enums display as their stored value
    data = [{c: getattr(getattr(item, c), "value", getattr(item, c)) for c in columns} for item in items]
    return pd.DataFrame(data, columns=columns)


def run_action(fn, *args, success: str, **kwargs):
    try:
        result = fn(*args, **kwargs)
    except DuesError as e:
        st.error(str(e))
        return None
    st.success(success)
    return result


def choose_membership(organization_id: int, statuses=None, key: str = "membership"):
    members = store.list_memberships(organization_id, statuses)
    if not members:
        st.caption("No memberships here.")
        return None
    options = {f"{m.member_name} ({m.status.value}) - ID {m.id}": m for m in members}
    return options[st.selectbox("Membership", list(options.keys()), key=key)]


# ---------- Pages ----------

def dashboard_page(organization):
    st.header("📊 Dashboard")
    config = billing_config.config_for_organization(organization)
    today = utils.today_in_timezone(organization.timezone)

    members = store.list_memberships(organization.id)
    eligible = [m for m in members if m.paid_months >= config.eligibility_months and m.status != MembershipStatus.CANCELLED]
    review = store.list_review_queue(organization.id)
    overdue = store.list_overdue_payments(organization.id, today)

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Memberships", len(members))
    c2.metric("Eligible", len(eligible))
    c3.metric("Overdue invoices", len(overdue))
    c4.metric("Needs review", len(review))

    st.divider()
    st.subheader("Requires review")
    if review:
        df = rows_frame(review)
        st.dataframe(df, use_container_width=True, hide_index=True)
        st.download_button(
            "Download review_queue.csv",
            data=df.to_csv(index=False).encode("utf-8"),
            file_name="review_queue.csv",
            mime="text/csv",
        )
    else:
        st.caption("Nothing waiting for review.")

    st.subheader("Overdue invoices")
    if overdue:
        st.dataframe(rows_frame(overdue), use_container_width=True, hide_index=True)
    else:
        st.caption("No overdue invoices.")

    st.subheader("By status")
    if members:
        counts = pd.Series([m.status.value for m in members]).value_counts().rename_axis("status").reset_index(name="count")
        st.dataframe(counts, use_container_width=True, hide_index=True)


def record_payment_page(organization):
    st.header("💵 Record payment")
    membership = choose_membership(organization.id, key="pay_membership")
    if membership is None:
        return

    open_payments = [p for p in store.list_payments(membership.id) if p.status.value in ("pending", "processing", "failed")]
    invoice_options = {"(new invoice)": None}
    invoice_options.update({f"{p.invoice_number or p.id} - {p.period_label or p.type.value} - {p.amount:.2f}": p for p in open_payments})
    chosen = invoice_options[st.selectbox("Invoice", list(invoice_options.keys()))]

    c1, c2, c3 = st.columns(3)
    with c1:
        amount = st.number_input(
            "Amount", min_value=0.0, step=1.0,
            value=float(chosen.amount if chosen else membership.dues_amount),
        )
    with c2:
        method = st.selectbox("Method", [m.value for m in MANUAL_METHODS])
    with c3:
        payment_type = st.selectbox("Type", [t.value for t in PaymentType], disabled=chosen is not None)
    months = None
    if chosen is None and payment_type == PaymentType.BACK_DUES.value:
        months = int(st.number_input("Months credited", min_value=1, step=1, value=1))
    notes = st.text_input("Notes", value="")

    # one submission key per filled-in form; pressing the button again on the same entry is a no-op
    form_values = (membership.id, chosen.id if chosen else None, amount, method, payment_type, months, notes.strip())
    new_entry = st.button("Start a new entry")
    if new_entry or st.session_state.get("pay_form") != form_values:
        st.session_state.pay_form = form_values
        st.session_state.pay_submission = uuid.uuid4().hex

    if st.button("Record payment", type="primary"):
        result = run_action(
            settlement.record_manual_payment,
            membership.id,
            amount,
            method,
            st.session_state.username,
            payment_type=payment_type,
            months_credited=months,
            payment_id=chosen.id if chosen else None,
            notes=notes.strip() or None,
            submission_key=st.session_state.pay_submission,
            success="Payment recorded.",
        )
        if result and result.duplicate:
            st.info("This entry was already recorded; nothing changed. Use 'Start a new entry' for another payment.")
        elif result:
            st.write(
                f"Paid months: **{result.new_paid_months}** | Status: **{result.new_status.value}**"
                + (" | 🎉 Now eligible" if result.became_eligible else "")
            )

    st.divider()
    st.subheader("Payment history")
    history = store.list_payments(membership.id)
    if history:
        cols = ["id", "invoice_number", "type", "status", "amount", "months_credited", "due_date", "period_label", "paid_at"]
        st.dataframe(models_frame(history, cols), use_container_width=True, hide_index=True)

        completed = {f"{p.invoice_number or p.id} - {p.amount:.2f}": p for p in history if p.status.value == "completed"}
        if completed:
            with st.expander("Refund"):
                target = completed[st.selectbox("Completed payment", list(completed.keys()))]
                reason = st.text_input("Refund reason")
                if st.button("Refund"):
                    run_action(
                        settlement.refund_payment, target.id, reason, st.session_state.username,
                        success="Refunded. Paid months were not changed; override them if needed.",
                    )


def reminders_page(organization):
    st.header("⏰ Reminders")
    if st.button("Run reminder sweep now", type="primary"):
        result = run_action(reminders.process_organization_reminders, organization.id, success="Sweep finished.")
        if result:
            st.write(
                f"Sent: **{len(result.sent)}** | Flagged for review: **{len(result.flagged_for_review)}** | "
                f"Delivery failures: **{len(result.delivery_failures)}** | Errors: **{len(result.errors)}**"
            )

    today = utils.today_in_timezone(organization.timezone)
    overdue = store.list_overdue_payments(organization.id, today)
    if not overdue:
        st.caption("No overdue invoices.")
        return
    st.dataframe(rows_frame(overdue), use_container_width=True, hide_index=True)

    options = {f"{r['invoice_number'] or r['id']} - {r['member_name']}": r["id"] for r in overdue}
    payment_id = options[st.selectbox("Invoice", list(options.keys()))]
    c1, c2, c3, c4 = st.columns(4)
    with c1:
        if st.button("Send reminder now"):
            run_action(reminders.send_payment_reminder, payment_id, success="Reminder sent.")
    with c2:
        if st.button("Pause reminders"):
            run_action(reminders.pause_reminders, payment_id, success="Reminders paused.")
    with c3:
        if st.button("Resume reminders"):
            run_action(reminders.resume_reminders, payment_id, success="Reminders resumed.")
    with c4:
        reset = st.checkbox("Restart schedule", value=False)
        if st.button("Resolve review"):
            run_action(reminders.resolve_review, payment_id, reset_count=reset, success="Review resolved.")


def memberships_page(organization):
    st.header("👥 Memberships")
    members = store.list_memberships(organization.id)
    if members:
        cols = ["id", "member_name", "status", "billing_frequency", "dues_amount", "paid_months",
                "next_payment_due", "subscription_status", "eligible_date"]
        st.dataframe(models_frame(members, cols), use_container_width=True, hide_index=True)

    membership = choose_membership(organization.id, key="lifecycle_membership")
    if membership is None:
        return

    st.subheader("Onboarding")
    c1, c2, c3 = st.columns(3)
    with c1:
        if st.button("Agreement sent", disabled=membership.status != MembershipStatus.PENDING):
            run_action(memberships.mark_agreement_sent, membership.id, success="Marked as sent.")
    with c2:
        if st.button("Agreement signed", disabled=membership.status != MembershipStatus.AWAITING_SIGNATURE):
            run_action(memberships.mark_agreement_signed, membership.id, success="Marked as signed.")
    with c3:
        if st.button("Generate first invoices"):
            plan = run_action(catchup.apply_enrollment_plan, membership.id, success="Enrollment plan applied.")
            if plan:
                st.write(f"First billing date: **{plan.next_billing_date}**")
                if plan.catchup:
                    st.write(plan.catchup.summary)

    st.subheader("Paid months override")
    new_value = int(st.number_input("Paid months", min_value=0, step=1, value=membership.paid_months))
    reason = st.text_input("Reason for override")
    if st.button("Override paid months"):
        run_action(
            memberships.override_paid_months, membership.id, new_value, st.session_state.username, reason,
            success="Paid months updated.",
        )
    adjustments = store.list_paid_months_adjustments(membership.id)
    if adjustments:
        st.dataframe(rows_frame(adjustments), use_container_width=True, hide_index=True)

    if membership.status == MembershipStatus.CANCELLED:
        st.subheader("Reinstate")
        reset = st.checkbox("Reset paid months to 0", value=False)
        if st.button("Reinstate membership", type="primary"):
            run_action(
                memberships.reinstate_membership, membership.id, st.session_state.username,
                reset_paid_months=0 if reset else None, success="Membership reinstated.",
            )


def billing_settings_page(organization):
    st.header("⚙️ Billing settings")
    config = billing_config.config_for_organization(organization)

    schedule = st.text_input("Reminder schedule (days past due, comma separated)",
                             value=", ".join(str(d) for d in config.reminder_schedule))
    c1, c2, c3 = st.columns(3)
    with c1:
        max_reminders = int(st.number_input("Max reminders", min_value=0, step=1, value=config.max_reminders))
        send = st.toggle("Send invoice reminders", value=config.send_invoice_reminders)
    with c2:
        eligibility = int(st.number_input("Eligibility months", min_value=1, step=1, value=config.eligibility_months))
        lapse = int(st.number_input("Lapse after (days)", min_value=0, step=1, value=config.lapse_days))
    with c3:
        cancel = int(st.number_input("Cancel after (months)", min_value=1, step=1, value=config.cancel_months))

    if st.button("Save settings", type="primary"):
        try:
            days = [int(d) for d in schedule.split(",") if d.strip()]
        except ValueError:
            st.error("Reminder schedule must be whole numbers.")
            return
        run_action(
            billing_config.update_billing_config,
            organization.id,
            {
                "reminder_schedule": days,
                "max_reminders": max_reminders,
                "send_invoice_reminders": send,
                "eligibility_months": eligibility,
                "lapse_days": lapse,
                "cancel_months": cancel,
            },
            success="Billing settings saved.",
        )

    st.divider()
    st.subheader("Billing run")
    dry = st.toggle("Dry run", value=True)
    if st.button("Run billing now"):
        result = run_action(billing_run.run_billing, organization.id, dry_run=dry, success="Billing run finished.")
        if result:
            st.json({
                "invoices_created": result.invoices_created,
                "would_bill": result.would_bill,
                "lapsed": result.lapsed,
                "cancelled": result.cancelled,
                "errors": result.errors,
            })


def account_page(organization):
    st.header("🔑 Account")
    st.caption(f"Logged in as {st.session_state.username} at {datetime.now(timezone.utc):%Y-%m-%d %H:%M} UTC")
    password_form("account")

    st.divider()
    st.subheader("Add administrator")
    new_username = st.text_input("Username", key="new_admin_username")
    new_password = st.text_input("Initial password", type="password", key="new_admin_password")
    if st.button("Create administrator"):
        run_action(auth.create_admin, new_username, new_password, success=f"Administrator {new_username.strip()} created.")


PAGES = {
    "Dashboard": dashboard_page,
    "Record payment": record_payment_page,
    "Reminders": reminders_page,
    "Memberships": memberships_page,
    "Billing settings": billing_settings_page,
    "Account": account_page,
}


def main_app():
    st.sidebar.title("🕌 Dues Billing")
    st.sidebar.caption(f"Logged in as: {st.session_state.username}")

    organizations = store.list_organizations()
    if not organizations:
        st.info("No organizations yet.")
        return
    by_name = {f"{o.name} (ID {o.id})": o for o in organizations}
    organization = by_name[st.sidebar.selectbox("Organization", list(by_name.keys()))]

    pages = list(PAGES)
    if "page" not in st.session_state:
        st.session_state.page = "Dashboard"
    st.session_state.page = st.sidebar.radio("Navigate", pages, index=pages.index(st.session_state.page))

    if st.sidebar.button("Logout"):
        logout()
        st.rerun()

    PAGES[st.session_state.page](organization)


# --------- App entry ---------

def run():
    init_once()
    require_login()

    if not st.session_state.logged_in:
        login_screen()
        return

    # Force password change on first login after DB creation
    if db.is_force_password_change():
        force_change_password_screen()
        return

    main_app()


if __name__ == "__main__":
    run()
