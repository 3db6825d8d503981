from flask import flash, redirect, render_template, request, url_for
from flask_login import current_user, login_required, login_user, logout_user

from marksync.auth import auth_bp
from marksync.services.accounts import (
    AccountError,
    authenticate,
    create_account,
    has_users,
)
from marksync.services.common import safe_redirect_target


@auth_bp.route("/bootstrap", methods=["GET", "POST"])
def bootstrap_admin():
    if has_users():
        return redirect(url_for("auth.login"))

    if request.method == "POST":
        password = request.form.get("password") or ""
        if password != (request.form.get("confirm_password") or ""):
            flash("Passwords do not match.", "error")
            return render_template("bootstrap.html")
        try:
            create_account(request.form.get("username"), password, is_admin=True)
        except AccountError as exc:
            flash(f"{exc.message.capitalize()}.", "error")
        else:
            flash("Admin account created. Please sign in.", "success")
            return redirect(url_for("auth.login"))

    return render_template("bootstrap.html")


@auth_bp.route("/login", methods=["GET", "POST"])
def login():
    target = safe_redirect_target(
        request.args.get("next") or request.form.get("next"),
        url_for("web.dashboard"),
    )
    if current_user.is_authenticated:
        return redirect(target)
    if not has_users():
        return redirect(url_for("auth.bootstrap_admin"))

    if request.method == "POST":
        user = authenticate(request.form.get("username"), request.form.get("password"))
        if user:
            login_user(user)
            return redirect(target)
        flash("Invalid credentials.", "error")

    return render_template("login.html")


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return redirect(url_for("auth.login"))
