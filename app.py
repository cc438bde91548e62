# app.py
from typing import Dict

import streamlit as st
import structlog
from streamlit_cookies_manager import EncryptedCookieManager

from auth_rest import AuthClient
from auth_screens import SignInForm, SignUpForm
from config import ConfigError, configure_logging, load_settings
from session_gate import DASHBOARD, LOADING, LOGIN, REGISTER, SessionGate
from supabase_client import SubjectStore
from tracker import LOAD_FAILED, StudyDashboard

st.set_page_config(page_title="Study Tracker", page_icon="📚")

st.markdown("""
<style>
.stButton > button { white-space: nowrap !important; padding: .35rem .65rem !important; line-height: 1.1 !important; }
</style>
""", unsafe_allow_html=True)

try:
    settings = load_settings()
except ConfigError as e:
    st.error(str(e))
    st.stop()


@st.cache_resource
def _init_logging(level: str, fmt: str) -> bool:
    configure_logging(level, fmt)
    return True


_init_logging(settings.log_level, settings.log_format)
log = structlog.get_logger()

# ---- Cookies (remembered sessions) ----
cookies = EncryptedCookieManager(prefix="studytracker.", password=settings.cookie_password)
if not cookies.ready():
    st.stop()


# ---------------- Query helpers ----------------
def _get_params() -> Dict[str, str]:
    return dict(st.query_params)


def _set_params(**kwargs):
    st.query_params.clear()
    st.query_params.update(kwargs)


# ---------------- Session ----------------
def _get_gate() -> SessionGate:
    gate = st.session_state.get("gate")
    if gate is None:
        auth = AuthClient(settings)
        store = SubjectStore(settings, auth.access_token)
        gate = SessionGate(auth, lambda identity: StudyDashboard(identity, store))
        st.session_state["gate"] = gate
        st.session_state["sign_in_form"] = SignInForm(auth)
        st.session_state["sign_up_form"] = SignUpForm(auth)
    return gate


def _sync_cookie(gate: SessionGate) -> None:
    """Keep the remembered refresh token in step with the live session."""
    token = gate.remembered_token()
    stored = cookies.get("refresh_token") or ""
    if token and st.session_state.get("remember_me", True):
        if token != stored:
            cookies["refresh_token"] = token
            cookies.save()
    elif gate.resolved and stored:
        del cookies["refresh_token"]
        cookies.save()


gate = _get_gate()

if not gate.resolved:
    with st.spinner("Loading..."):
        gate.auth.resolve(cookies.get("refresh_token") or None)

requested = _get_params().get("view", LOGIN)
view = gate.route(requested)
if view != requested:
    _set_params(view=view)
_sync_cookie(gate)


# ---------- Auth screens ----------
def render_login():
    form: SignInForm = st.session_state["sign_in_form"]
    st.markdown("<h1 style='margin:0;'>📚 Study Tracker</h1>", unsafe_allow_html=True)
    st.write("Welcome back! Please sign in.")

    if form.reset_sent:
        st.success("Password reset email sent! Check your inbox.")
    if form.error:
        c1, c2 = st.columns([10, 1])
        c1.error(form.error)
        c2.button("✕", key="login_err_dismiss", on_click=form.dismiss_error)

    email = st.text_input("Email Address", key="login_email", on_change=form.on_input_change,
                          placeholder="Enter your email")
    pwd = st.text_input("Password", type="password", key="login_pwd", on_change=form.on_input_change,
                        placeholder="Enter your password")
    remember = st.checkbox("Stay signed in", key="remember", value=True)

    c1, c2 = st.columns(2)
    if c1.button("Sign in", type="primary", key="login_btn", disabled=form.busy, use_container_width=True):
        with st.spinner("Signing in..."):
            ok = form.sign_in(email, pwd)
        if ok:
            st.session_state["remember_me"] = remember
            _set_params(view=DASHBOARD)
        st.rerun()
    if c2.button("Forgot password?", key="login_forgot", disabled=form.busy, use_container_width=True):
        with st.spinner("Sending..."):
            form.request_password_reset(email)
        st.rerun()

    st.markdown("---")
    if st.button("Don't have an account? Sign up", key="login_to_signup"):
        form.on_input_change()
        _set_params(view=REGISTER)
        st.rerun()


def render_register():
    form: SignUpForm = st.session_state["sign_up_form"]
    st.markdown("<h1 style='margin:0;'>📚 Create account</h1>", unsafe_allow_html=True)
    st.write("Start tracking your study progress.")

    if form.confirmation_pending:
        st.success("Check your email to confirm, then sign in.")
    if form.error:
        c1, c2 = st.columns([10, 1])
        c1.error(form.error)
        c2.button("✕", key="signup_err_dismiss", on_click=form.dismiss_error)

    name = st.text_input("Full Name", key="signup_name", on_change=form.on_input_change,
                         placeholder="Enter your full name")
    email = st.text_input("Email Address", key="signup_email", on_change=form.on_input_change,
                          placeholder="Enter your email")
    pwd = st.text_input("Password", type="password", key="signup_pwd", on_change=form.on_input_change,
                        placeholder="Create a strong password")
    confirm = st.text_input("Confirm Password", type="password", key="signup_confirm",
                            on_change=form.on_input_change, placeholder="Confirm your password")

    if st.button("Create account", type="primary", key="signup_btn", disabled=form.busy):
        with st.spinner("Creating account..."):
            ok = form.sign_up(name, email, pwd, confirm)
        if ok and not form.confirmation_pending:
            _set_params(view=DASHBOARD)
        st.rerun()

    st.markdown("---")
    if st.button("Have an account? Sign in", key="signup_to_login"):
        form.on_input_change()
        form.confirmation_pending = False
        _set_params(view=LOGIN)
        st.rerun()


# ---------- Dashboard ----------
def _add_subject_cb(dash: StudyDashboard):
    if dash.add_subject(st.session_state.get("new_subject", "")):
        st.session_state["new_subject"] = ""


def _add_topic_cb(dash: StudyDashboard, subject_id: str):
    key = f"new_topic_{subject_id}"
    if dash.add_topic(subject_id, st.session_state.get(key, "")):
        st.session_state[key] = ""


def subject_card(dash: StudyDashboard, subject):
    cont = st.container(border=True)
    p = dash.progress(subject)

    left, right = cont.columns([10, 1])
    with left:
        st.markdown(f"### {subject.name}")
        line = f"📊 Progress: {p.completed}/{p.total} topics"
        if p.total > 0:
            line += f" · **{p.percent}% complete**"
        st.markdown(line)
        if p.total > 0:
            st.progress(p.percent / 100)

    # Delete with confirm
    del_key = f"del_subject_{subject.id}"
    if not st.session_state.get(del_key):
        if right.button("🗑️", key=f"del_btn_{subject.id}", help="Delete Subject"):
            st.session_state[del_key] = True
            st.rerun(scope="fragment")
    else:
        cont.warning("Are you sure you want to delete this subject and all its topics?")
        d1, d2 = cont.columns(2)
        if d1.button("Confirm", type="primary", key=f"del_yes_{subject.id}"):
            st.session_state[del_key] = False
            dash.delete_subject(subject.id, confirmed=True)
            st.rerun(scope="fragment")
        if d2.button("Cancel", key=f"del_no_{subject.id}"):
            st.session_state[del_key] = False
            st.rerun(scope="fragment")

    if subject.topics:
        cont.markdown("**Topics:**")
        for i, topic in enumerate(subject.topics):
            t1, t2 = cont.columns([10, 1])
            label = f"~~{topic.name}~~ ✓" if topic.done else topic.name
            # done is part of the key so a pushed value replaces any stale widget state
            t1.checkbox(
                label,
                value=topic.done,
                key=f"topic_{subject.id}_{i}_{topic.id}_{int(topic.done)}",
                on_change=dash.toggle_topic,
                args=(subject.id, i, topic.id),
            )
            t2.button(
                "✕",
                key=f"del_topic_{subject.id}_{i}_{topic.id}",
                help="Delete Topic",
                on_click=dash.delete_topic,
                args=(subject.id, i, topic.id),
            )

    a1, a2 = cont.columns([4, 1])
    a1.text_input("Add a new topic", key=f"new_topic_{subject.id}", placeholder="Add a new topic...",
                  label_visibility="collapsed")
    a2.button("Add Topic", key=f"add_topic_{subject.id}", on_click=_add_topic_cb, args=(dash, subject.id),
              use_container_width=True)


@st.fragment(run_every=settings.poll_interval)
def render_dashboard():
    dash = gate.dashboard_for_session()
    if dash is None:
        st.rerun()
    dash.process_events()
    _sync_cookie(gate)

    if dash.loading:
        st.info("Loading your study tracker...")
        return

    identity = dash.identity
    left, right = st.columns([8, 2])
    with left:
        st.markdown("<h1 style='margin:0;'>📚 Study Tracker</h1>", unsafe_allow_html=True)
        st.caption(f"Welcome back, {identity.display_name or identity.email}")
    with right:
        if st.button("🚪 Logout", key="logout_btn", use_container_width=True):
            if gate.sign_out():
                _set_params(view=LOGIN)
                st.rerun()
            else:
                st.rerun(scope="fragment")

    if dash.error:
        e1, e2, e3 = st.columns([8, 1, 1])
        e1.error(dash.error)
        if dash.error == LOAD_FAILED:
            e2.button("↻", key="reload_btn", help="Try again", on_click=dash.reload)
        e3.button("✕", key="dash_err_dismiss", on_click=dash.dismiss_error)

    with st.container(border=True):
        st.markdown("#### Add New Subject")
        c1, c2 = st.columns([4, 1])
        c1.text_input("New Subject", key="new_subject", label_visibility="collapsed",
                      placeholder="Enter subject name (e.g., Mathematics, Physics)")
        c2.button("Add Subject", key="add_subject_btn", type="primary", on_click=_add_subject_cb, args=(dash,),
                  use_container_width=True)

    if not dash.snapshot:
        st.markdown("### 📖 No subjects yet")
        st.write("Add your first subject to start tracking your study progress!")
        return

    for subject in dash.snapshot:
        subject_card(dash, subject)


# ---------- Router ----------
if view == LOADING:
    st.info("Loading...")
elif view == DASHBOARD:
    render_dashboard()
elif view == REGISTER:
    render_register()
else:
    render_login()
