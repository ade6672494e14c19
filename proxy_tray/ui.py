"""wxPython windows for Copilot Proxy Tray: main window and sign-in dialog.

wxPython uses native widgets on every platform, which keeps the windows
readable by screen readers without extra work.

Both classes can be poked from worker threads (the supervisor's exit
watcher, the device-flow poll loop); every widget access is marshalled
onto the UI thread with ``wx.CallAfter``.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable

import wx
import wx.adv

from proxy_tray import __app_name__
from proxy_tray.claude_env import ClaudeLaunchError
from proxy_tray.commands import CLOSE_CANCEL, CLOSE_MINIMIZE, CLOSE_QUIT
from proxy_tray.config import ACCOUNT_TYPES
from proxy_tray.copilot_api import CopilotApiError, summarize_usage
from proxy_tray.device_auth import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    STATUS_WAITING,
    DeviceAuthError,
    DeviceAuthSession,
)
from proxy_tray.state import (
    EVENT_CLOSE_REQUESTED,
    EVENT_STARTED,
    EVENT_STOPPED,
    EVENT_TRIGGER_START,
    ServiceState,
    ServiceStatus,
)

if TYPE_CHECKING:
    from proxy_tray.app import App

logger = logging.getLogger(__name__)

# ---- Accessible colour palette (WCAG 2.2 AA contrast >= 4.5:1) ----
ERROR_FG = "#C4001A"
SUCCESS_FG = "#0A6E0A"
WAITING_FG = "#8A5A00"

_STATUS_COLOURS = {
    STATUS_WAITING: WAITING_FG,
    STATUS_SUCCESS: SUCCESS_FG,
    STATUS_ERROR: ERROR_FG,
}

RISK_NOTICE = (
    "This proxy forwards requests to GitHub Copilot using your account.\n\n"
    "Automated or excessive use may violate GitHub's terms and can lead to "
    "your Copilot access being suspended.  Use it at your own risk.\n\n"
    "Do you want to continue?"
)


# ======================================================================
# Device-code dialog
# ======================================================================


class DeviceCodeDialog:
    """Shows the user code while the device flow polls.

    Implements the ``VerificationPrompt`` protocol.  Created on the poll
    thread; all widget work happens on the UI thread.  Closing the dialog
    by hand calls *on_user_close*, which cancels the flow.
    """

    def __init__(
        self,
        parent: wx.Window | None,
        session: DeviceAuthSession,
        on_user_close: Callable[[], None],
    ):
        self._parent = parent
        self._session = session
        self._on_user_close = on_user_close
        self._dlg: wx.Dialog | None = None
        self._status: wx.StaticText | None = None
        self._copied: wx.StaticText | None = None
        self._closing = False

    # ---- VerificationPrompt ----

    def show(self) -> None:
        wx.CallAfter(self._build)

    def set_status(self, text: str, kind: str = STATUS_WAITING) -> None:
        wx.CallAfter(self._set_status, text, kind)

    def close(self, delay: float = 0.0) -> None:
        self._closing = True
        if delay > 0:
            wx.CallAfter(wx.CallLater, int(delay * 1000), self._destroy)
        else:
            wx.CallAfter(self._destroy)

    # ---- UI thread ----

    def _build(self) -> None:
        if self._closing:
            return
        self._dlg = wx.Dialog(
            self._parent,
            title="GitHub Sign-in",
            style=wx.CAPTION | wx.CLOSE_BOX | wx.STAY_ON_TOP,
        )
        self._dlg.Bind(wx.EVT_CLOSE, self._on_close_event)
        sizer = wx.BoxSizer(wx.VERTICAL)

        hint = wx.StaticText(self._dlg, label="Enter this code in your browser:")
        sizer.Add(hint, flag=wx.ALL | wx.ALIGN_CENTER_HORIZONTAL, border=10)

        code = wx.TextCtrl(
            self._dlg,
            value=self._session.user_code,
            style=wx.TE_READONLY | wx.TE_CENTER | wx.BORDER_NONE,
            size=(260, -1),
        )
        code.SetName("Verification code")
        code_font = code.GetFont()
        code_font.SetPointSize(22)
        code_font.MakeBold()
        code.SetFont(code_font)
        sizer.Add(code, flag=wx.LEFT | wx.RIGHT | wx.ALIGN_CENTER_HORIZONTAL, border=10)

        copy_row = wx.BoxSizer(wx.HORIZONTAL)
        copy_btn = wx.Button(self._dlg, label="&Copy code")
        copy_btn.Bind(wx.EVT_BUTTON, self._on_copy)
        copy_row.Add(copy_btn, flag=wx.RIGHT | wx.ALIGN_CENTER_VERTICAL, border=8)
        self._copied = wx.StaticText(self._dlg, label="")
        copy_row.Add(self._copied, flag=wx.ALIGN_CENTER_VERTICAL)
        sizer.Add(copy_row, flag=wx.ALL | wx.ALIGN_CENTER_HORIZONTAL, border=6)

        opened = wx.StaticText(self._dlg, label="The verification page was opened in your browser:")
        sizer.Add(opened, flag=wx.LEFT | wx.RIGHT | wx.ALIGN_CENTER_HORIZONTAL, border=10)
        link = wx.adv.HyperlinkCtrl(
            self._dlg, label=self._session.verification_uri, url=self._session.verification_uri
        )
        sizer.Add(link, flag=wx.ALL | wx.ALIGN_CENTER_HORIZONTAL, border=4)

        self._status = wx.StaticText(self._dlg, label="Waiting for authorization…")
        self._status.SetName("Sign-in status")
        self._status.SetForegroundColour(WAITING_FG)
        sizer.Add(self._status, flag=wx.ALL | wx.ALIGN_CENTER_HORIZONTAL, border=10)

        self._dlg.SetSizerAndFit(sizer)
        self._dlg.CentreOnParent()
        if self._parent:
            self._parent.Disable()
        self._dlg.Show()
        copy_btn.SetFocus()

    def _set_status(self, text: str, kind: str) -> None:
        if not self._status:
            return
        self._status.SetLabel(text)
        self._status.SetForegroundColour(_STATUS_COLOURS.get(kind, WAITING_FG))
        if self._dlg:
            self._dlg.Layout()

    def _on_copy(self, event: wx.CommandEvent) -> None:
        if wx.TheClipboard.Open():
            try:
                wx.TheClipboard.SetData(wx.TextDataObject(self._session.user_code))
                label = "Copied"
            finally:
                wx.TheClipboard.Close()
        else:
            label = "Copy failed, select the code by hand"
        if self._copied:
            self._copied.SetLabel(label)

    def _on_close_event(self, event: wx.CloseEvent) -> None:
        user_closed = not self._closing
        self._destroy()
        if user_closed:
            self._on_user_close()

    def _destroy(self) -> None:
        if self._parent:
            self._parent.Enable()
        if self._dlg:
            self._dlg.Destroy()
            self._dlg = None
            self._status = None
            self._copied = None


# ======================================================================
# Main window
# ======================================================================


class MainWindow:
    """Service controls, GitHub sign-in and the proxy log.

    Registered with the state broadcaster as an observer.
    """

    def __init__(self, app: "App"):
        """Create the main window (hidden until ``show`` is called)."""
        self._app = app
        self._win: wx.Frame | None = None
        self._status_label: wx.StaticText | None = None
        self._error_label: wx.StaticText | None = None
        self._auth_label: wx.StaticText | None = None
        self._port_ctrl: wx.SpinCtrl | None = None
        self._account_ctrl: wx.Choice | None = None
        self._detect_btn: wx.Button | None = None
        self._model_ctrl: wx.ComboBox | None = None
        self._small_model_ctrl: wx.ComboBox | None = None
        self._models_btn: wx.Button | None = None
        self._usage_label: wx.StaticText | None = None
        self._claude_label: wx.StaticText | None = None
        self._toggle_btn: wx.Button | None = None
        self._sign_in_btn: wx.Button | None = None
        self._sign_out_btn: wx.Button | None = None
        self._log_ctrl: wx.TextCtrl | None = None
        self._timer: wx.Timer | None = None
        self._state = ServiceState()
        self._log_lines: list[str] = []
        self._ready = False
        self._ready_cancel: threading.Event | None = None

    @property
    def frame(self) -> wx.Frame | None:
        return self._win

    def show(self) -> None:
        """Show or focus the main window."""
        if self._win is None:
            self._build()
        self._win.Show()
        self._win.Raise()

    def hide(self) -> None:
        if self._win:
            self._win.Hide()

    def destroy(self) -> None:
        if self._timer:
            self._timer.Stop()
            self._timer = None
        if self._win:
            self._win.Destroy()
            self._win = None

    # ---- StateObserver (any thread) ----

    def on_service_state(self, state: ServiceState) -> None:
        wx.CallAfter(self._apply_state, state)

    def on_service_event(self, event: str, payload: dict[str, Any]) -> None:
        wx.CallAfter(self._handle_event, event, payload)

    # ---- build ----

    def _build(self) -> None:
        cfg = self._app.config
        self._win = wx.Frame(None, title=__app_name__, size=(640, 620))
        self._win.SetMinSize((560, 520))
        self._win.Bind(wx.EVT_CLOSE, self._on_close_event)

        panel = wx.Panel(self._win)
        main_sizer = wx.BoxSizer(wx.VERTICAL)

        header = wx.StaticText(panel, label="Copilot Proxy")
        header_font = header.GetFont()
        header_font.SetPointSize(14)
        header_font.MakeBold()
        header.SetFont(header_font)
        main_sizer.Add(header, flag=wx.ALL, border=10)

        self._status_label = wx.StaticText(panel, label="Stopped")
        self._status_label.SetName("Service status")
        main_sizer.Add(self._status_label, flag=wx.LEFT | wx.RIGHT, border=10)

        self._error_label = wx.StaticText(panel, label="")
        self._error_label.SetForegroundColour(ERROR_FG)
        main_sizer.Add(self._error_label, flag=wx.LEFT | wx.RIGHT | wx.BOTTOM, border=10)

        # ---- settings ----
        grid = wx.FlexGridSizer(cols=2, vgap=6, hgap=8)
        grid.AddGrowableCol(1)
        grid.Add(wx.StaticText(panel, label="&Port:"), flag=wx.ALIGN_CENTER_VERTICAL)
        self._port_ctrl = wx.SpinCtrl(panel, min=1, max=65535, initial=cfg.port)
        self._port_ctrl.SetName("Port")
        grid.Add(self._port_ctrl)
        grid.Add(wx.StaticText(panel, label="&Account type:"), flag=wx.ALIGN_CENTER_VERTICAL)
        account_row = wx.BoxSizer(wx.HORIZONTAL)
        self._account_ctrl = wx.Choice(panel, choices=list(ACCOUNT_TYPES))
        self._account_ctrl.SetName("Account type")
        self._account_ctrl.SetStringSelection(cfg.account_type)
        account_row.Add(self._account_ctrl, flag=wx.RIGHT, border=8)
        self._detect_btn = wx.Button(panel, label="&Detect")
        self._detect_btn.Bind(wx.EVT_BUTTON, self._on_detect)
        account_row.Add(self._detect_btn)
        grid.Add(account_row)

        grid.Add(wx.StaticText(panel, label="&Model:"), flag=wx.ALIGN_CENTER_VERTICAL)
        model_row = wx.BoxSizer(wx.HORIZONTAL)
        self._model_ctrl = wx.ComboBox(panel, value=cfg.default_model, style=wx.CB_DROPDOWN)
        self._model_ctrl.SetName("Model")
        model_row.Add(self._model_ctrl, proportion=1, flag=wx.RIGHT, border=8)
        self._models_btn = wx.Button(panel, label="&Refresh models")
        self._models_btn.Bind(wx.EVT_BUTTON, lambda e: self._refresh_models())
        model_row.Add(self._models_btn)
        grid.Add(model_row, flag=wx.EXPAND)

        grid.Add(wx.StaticText(panel, label="S&mall model:"), flag=wx.ALIGN_CENTER_VERTICAL)
        self._small_model_ctrl = wx.ComboBox(panel, value=cfg.default_small_model, style=wx.CB_DROPDOWN)
        self._small_model_ctrl.SetName("Small model")
        grid.Add(self._small_model_ctrl, flag=wx.EXPAND)
        main_sizer.Add(grid, flag=wx.EXPAND | wx.LEFT | wx.RIGHT | wx.BOTTOM, border=10)

        # ---- buttons ----
        btn_sizer = wx.BoxSizer(wx.HORIZONTAL)
        self._toggle_btn = wx.Button(panel, label="&Start")
        self._toggle_btn.Bind(wx.EVT_BUTTON, self._on_toggle)
        btn_sizer.Add(self._toggle_btn, flag=wx.RIGHT, border=8)

        self._sign_in_btn = wx.Button(panel, label="Sign &in with GitHub")
        self._sign_in_btn.Bind(wx.EVT_BUTTON, lambda e: self.sign_in())
        btn_sizer.Add(self._sign_in_btn, flag=wx.RIGHT, border=8)

        self._sign_out_btn = wx.Button(panel, label="Sign &out")
        self._sign_out_btn.Bind(wx.EVT_BUTTON, self._on_sign_out)
        btn_sizer.Add(self._sign_out_btn)
        main_sizer.Add(btn_sizer, flag=wx.LEFT | wx.RIGHT | wx.BOTTOM, border=10)

        self._auth_label = wx.StaticText(panel, label="")
        self._auth_label.SetName("GitHub sign-in status")
        main_sizer.Add(self._auth_label, flag=wx.LEFT | wx.RIGHT | wx.BOTTOM, border=10)

        # ---- usage ----
        usage_row = wx.BoxSizer(wx.HORIZONTAL)
        usage_btn = wx.Button(panel, label="Refresh &usage")
        usage_btn.Bind(wx.EVT_BUTTON, lambda e: self._refresh_usage())
        usage_row.Add(usage_btn, flag=wx.RIGHT | wx.ALIGN_CENTER_VERTICAL, border=8)
        self._usage_label = wx.StaticText(panel, label="")
        self._usage_label.SetName("Usage")
        usage_row.Add(self._usage_label, flag=wx.ALIGN_CENTER_VERTICAL)
        main_sizer.Add(usage_row, flag=wx.LEFT | wx.RIGHT | wx.BOTTOM, border=10)

        # ---- claude code ----
        claude_row = wx.BoxSizer(wx.HORIZONTAL)
        launch_btn = wx.Button(panel, label="&Launch Claude Code…")
        launch_btn.Bind(wx.EVT_BUTTON, self._on_launch_claude)
        claude_row.Add(launch_btn, flag=wx.RIGHT, border=8)
        write_btn = wx.Button(panel, label="&Write Claude settings")
        write_btn.Bind(wx.EVT_BUTTON, self._on_write_claude_env)
        claude_row.Add(write_btn, flag=wx.RIGHT, border=8)
        clear_btn = wx.Button(panel, label="R&emove Claude settings")
        clear_btn.Bind(wx.EVT_BUTTON, self._on_clear_claude_env)
        claude_row.Add(clear_btn)
        main_sizer.Add(claude_row, flag=wx.LEFT | wx.RIGHT | wx.BOTTOM, border=10)
        self._claude_label = wx.StaticText(panel, label="")
        self._claude_label.SetName("Claude Code settings status")
        main_sizer.Add(self._claude_label, flag=wx.LEFT | wx.RIGHT | wx.BOTTOM, border=10)

        # ---- log ----
        main_sizer.Add(wx.StaticText(panel, label="Proxy log:"), flag=wx.LEFT | wx.RIGHT, border=10)
        self._log_ctrl = wx.TextCtrl(
            panel, style=wx.TE_MULTILINE | wx.TE_READONLY | wx.HSCROLL | wx.BORDER_SUNKEN
        )
        self._log_ctrl.SetName("Proxy log")
        main_sizer.Add(
            self._log_ctrl,
            proportion=1,
            flag=wx.EXPAND | wx.LEFT | wx.RIGHT | wx.BOTTOM,
            border=10,
        )

        panel.SetSizer(main_sizer)

        self._timer = wx.Timer(self._win)
        self._win.Bind(wx.EVT_TIMER, self._on_timer, self._timer)
        self._timer.Start(1500)

        self._apply_state(self._state)
        self._refresh_auth()
        self._refresh_claude_status()
        self._refresh_usage()
        self._refresh_logs()

    # ---- state rendering ----

    def _apply_state(self, state: ServiceState) -> None:
        was_running = self._state.running
        self._state = state
        if state.running and not was_running:
            self._wait_until_ready()
        elif not state.running:
            self._cancel_ready_wait()
        if not self._win:
            return
        if state.running and not self._ready:
            text = f"Starting on port {self._app.config.port}, waiting for the proxy…"
            colour = WAITING_FG
        elif state.running:
            text = f"Running on port {self._app.config.port}"
            if state.pid:
                text += f" (pid {state.pid})"
            if state.last_model_name:
                text += f" · model {state.last_model_name}"
            colour = SUCCESS_FG
        elif state.status is ServiceStatus.ERROR:
            text = "Failed to start"
            colour = ERROR_FG
        else:
            text = "Stopped"
            colour = wx.SystemSettings.GetColour(wx.SYS_COLOUR_WINDOWTEXT)
        self._status_label.SetLabel(text)
        self._status_label.SetForegroundColour(colour)
        self._error_label.SetLabel(state.last_error or "")
        self._toggle_btn.SetLabel("S&top" if state.running else "&Start")
        self._toggle_btn.Enable()
        self._port_ctrl.Enable(not state.running)
        self._win.Layout()

    def _handle_event(self, event: str, payload: dict[str, Any]) -> None:
        if event == EVENT_STOPPED and payload.get("unexpected") and self._error_label:
            self._error_label.SetLabel(
                f"The proxy stopped unexpectedly (exit code {payload.get('code')})."
            )
        elif event == EVENT_TRIGGER_START:
            self.show()
            self.start_interactive()
        elif event == EVENT_CLOSE_REQUESTED:
            self._confirm_close()
        elif event == EVENT_STARTED:
            self._refresh_logs()

    def _refresh_auth(self) -> None:
        status = self._app.invoke("auth_status")
        if self._auth_label:
            self._auth_label.SetLabel(
                "Signed in to GitHub." if status["has_token"] else "Not signed in to GitHub."
            )
        if self._sign_out_btn:
            self._sign_out_btn.Enable(status["has_token"])

    def _refresh_logs(self) -> None:
        if not self._log_ctrl:
            return
        lines = self._app.invoke("service_logs")["lines"]
        if lines == self._log_lines:
            return
        self._log_lines = lines
        self._log_ctrl.ChangeValue("\n".join(lines))
        self._log_ctrl.ShowPosition(self._log_ctrl.GetLastPosition())

    def _on_timer(self, event: wx.TimerEvent) -> None:
        self._refresh_logs()

    def _refresh_claude_status(self) -> None:
        status = self._app.invoke("check_claude_env")
        if self._claude_label:
            if status["written"]:
                self._claude_label.SetLabel(f"Claude Code settings point at {status['base_url']}.")
            else:
                self._claude_label.SetLabel("Claude Code settings are not set.")

    def _show_error(self, message: str) -> None:
        wx.MessageBox(message, __app_name__, wx.OK | wx.ICON_ERROR, self._win)

    # ---- background work ----

    def _run_in_background(
        self,
        name: str,
        work: Callable[[], dict[str, Any]],
        done: Callable[[dict[str, Any] | None, Exception | None], None],
    ) -> None:
        """Run *work* on a daemon thread and hand its outcome to *done* on the UI thread."""

        def runner() -> None:
            try:
                result, error = work(), None
            except CopilotApiError as exc:
                logger.warning("%s failed: %s", name, exc)
                result, error = None, exc
            except Exception as exc:
                logger.exception("%s failed.", name)
                result, error = None, exc
            wx.CallAfter(done, result, error)

        threading.Thread(target=runner, daemon=True, name=name).start()

    def _wait_until_ready(self) -> None:
        self._cancel_ready_wait()
        cancel = threading.Event()
        self._ready_cancel = cancel
        port = self._app.config.port
        self._run_in_background(
            "ProxyReady",
            lambda: self._app.invoke("service_wait_ready", {"port": port, "cancelled": cancel}),
            lambda result, error: self._on_ready_result(cancel, result, error),
        )

    def _cancel_ready_wait(self) -> None:
        if self._ready_cancel:
            self._ready_cancel.set()
            self._ready_cancel = None
        self._ready = False

    def _on_ready_result(
        self, cancel: threading.Event, result: dict[str, Any] | None, error: Exception | None
    ) -> None:
        # A stop or a newer start has taken over.
        if cancel is not self._ready_cancel:
            return
        self._ready_cancel = None
        if error is None and result and result.get("ready"):
            self._ready = True
            self._apply_state(self._state)
            self._refresh_usage()
        elif self._win and self._error_label:
            self._error_label.SetLabel(str(error) if error else result.get("message", ""))
            self._win.Layout()

    def _selected_account_type(self) -> str:
        if self._account_ctrl and self._account_ctrl.GetStringSelection():
            return self._account_ctrl.GetStringSelection()
        return self._app.config.account_type

    def _refresh_models(self) -> None:
        if self._models_btn:
            self._models_btn.Disable()
        account_type = self._selected_account_type()
        self._run_in_background(
            "FetchModels",
            lambda: self._app.invoke("fetch_models", {"account_type": account_type}),
            self._on_models,
        )

    def _on_models(self, result: dict[str, Any] | None, error: Exception | None) -> None:
        if self._models_btn:
            self._models_btn.Enable()
        if error is not None:
            self._show_error(f"Could not load the model list: {error}")
            return
        for ctrl in (self._model_ctrl, self._small_model_ctrl):
            if ctrl:
                value = ctrl.GetValue()
                ctrl.Set(result["models"])
                ctrl.SetValue(value)

    def _on_detect(self, event: wx.CommandEvent) -> None:
        if self._detect_btn:
            self._detect_btn.Disable()
        self._run_in_background(
            "DetectAccount", lambda: self._app.invoke("detect_account_type"), self._on_detected
        )

    def _on_detected(self, result: dict[str, Any] | None, error: Exception | None) -> None:
        if self._detect_btn:
            self._detect_btn.Enable()
        if error is not None:
            self._show_error(f"Could not detect the account type: {error}")
            return
        cfg = self._app.config
        cfg.account_type = result["account_type"]
        cfg.save()
        if self._account_ctrl:
            self._account_ctrl.SetStringSelection(cfg.account_type)
        if not result.get("detected"):
            wx.MessageBox(result.get("message", ""), __app_name__, wx.OK | wx.ICON_INFORMATION, self._win)
        self._refresh_models()

    def _refresh_usage(self) -> None:
        if not self._usage_label:
            return
        if not (self._state.running and self._ready):
            self._usage_label.SetLabel("Start the proxy to see usage.")
            return
        port = self._app.config.port
        self._run_in_background(
            "ProxyUsage",
            lambda: self._app.invoke("service_usage", {"port": port}),
            self._on_usage,
        )

    def _on_usage(self, result: dict[str, Any] | None, error: Exception | None) -> None:
        if not (self._win and self._usage_label):
            return
        if error is not None:
            self._usage_label.SetLabel(f"Usage unavailable: {error}")
        else:
            self._usage_label.SetLabel(summarize_usage(result))
        self._win.Layout()

    # ---- actions ----

    def _on_toggle(self, event: wx.CommandEvent) -> None:
        if self._state.running:
            self._app.invoke("service_stop")
        else:
            self.start_interactive()

    def start_interactive(self) -> None:
        """Run the full start flow: sign-in check, risk notice, then start."""
        cfg = self._app.config
        if self._port_ctrl:
            cfg.port = self._port_ctrl.GetValue()
        if self._account_ctrl:
            cfg.account_type = self._selected_account_type()
        if self._model_ctrl:
            cfg.default_model = self._model_ctrl.GetValue()
        if self._small_model_ctrl:
            cfg.default_small_model = self._small_model_ctrl.GetValue()

        if not self._app.invoke("auth_status")["has_token"]:
            answer = wx.MessageBox(
                "You need to sign in to GitHub before starting the proxy.\n\nSign in now?",
                __app_name__,
                wx.YES_NO | wx.ICON_QUESTION,
                self._win,
            )
            if answer == wx.YES:
                self.sign_in(start_after=True)
            return

        if cfg.needs_risk_acceptance():
            answer = wx.MessageBox(RISK_NOTICE, "Before you start", wx.YES_NO | wx.ICON_WARNING, self._win)
            if answer != wx.YES:
                return
            cfg.accept_risk(datetime.now(timezone.utc).isoformat())
        cfg.save()

        if self._toggle_btn:
            self._toggle_btn.SetLabel("Starting…")
            self._toggle_btn.Disable()
        try:
            self._app.invoke(
                "service_start",
                {"args": cfg.to_cli_args(), "model_name": cfg.default_model},
            )
        except RuntimeError as exc:
            logger.error("Start failed: %s", exc)
            self._apply_state(self._app.broadcaster.state)
            return
        self._refresh_logs()

    def sign_in(self, start_after: bool = False) -> None:
        """Run the device flow on a worker thread."""
        if self._sign_in_btn:
            self._sign_in_btn.Disable()
        threading.Thread(
            target=self._run_sign_in, args=(start_after,), daemon=True, name="DeviceAuth"
        ).start()

    def _run_sign_in(self, start_after: bool) -> None:
        try:
            result = self._app.invoke("auth_device_code_start")
        except DeviceAuthError as exc:
            result = {"status": "error", "message": str(exc)}
        except Exception as exc:
            logger.exception("Device flow failed.")
            result = {"status": "error", "message": str(exc)}
        wx.CallAfter(self._on_sign_in_done, result, start_after)

    def _on_sign_in_done(self, result: dict[str, Any], start_after: bool) -> None:
        if self._sign_in_btn:
            self._sign_in_btn.Enable()
        self._refresh_auth()
        status = result.get("status")
        if status == "success":
            if start_after:
                self.start_interactive()
        elif status != "canceled":
            wx.MessageBox(
                f"GitHub sign-in failed: {result.get('message', '')}",
                __app_name__,
                wx.OK | wx.ICON_ERROR,
                self._win,
            )

    # ---- claude code ----

    def _claude_payload(self) -> dict[str, Any]:
        cfg = self._app.config
        return {
            "port": self._port_ctrl.GetValue() if self._port_ctrl else cfg.port,
            "model": self._model_ctrl.GetValue() if self._model_ctrl else cfg.default_model,
            "small_model": (
                self._small_model_ctrl.GetValue() if self._small_model_ctrl else cfg.default_small_model
            ),
        }

    def _on_launch_claude(self, event: wx.CommandEvent) -> None:
        with wx.DirDialog(self._win, "Choose the Claude Code workspace") as dlg:
            if dlg.ShowModal() != wx.ID_OK:
                return
            cwd = dlg.GetPath()
        try:
            self._app.invoke("launch_claude_code", {**self._claude_payload(), "cwd": cwd})
        except ClaudeLaunchError as exc:
            self._show_error(str(exc))

    def _on_write_claude_env(self, event: wx.CommandEvent) -> None:
        try:
            self._app.invoke("write_claude_env", self._claude_payload())
        except OSError as exc:
            self._show_error(f"Could not write the Claude Code settings: {exc}")
            return
        self._refresh_claude_status()

    def _on_clear_claude_env(self, event: wx.CommandEvent) -> None:
        try:
            self._app.invoke("clear_claude_env")
        except OSError as exc:
            self._show_error(f"Could not update the Claude Code settings: {exc}")
            return
        self._refresh_claude_status()

    def _on_sign_out(self, event: wx.CommandEvent) -> None:
        answer = wx.MessageBox(
            "Delete the saved GitHub token?",
            __app_name__,
            wx.YES_NO | wx.ICON_QUESTION,
            self._win,
        )
        if answer == wx.YES:
            self._app.invoke("delete_token")
            self._refresh_auth()

    # ---- closing ----

    def _on_close_event(self, event: wx.CloseEvent) -> None:
        if self._app.quitting:
            event.Skip()
            return
        event.Veto()
        self._app.broadcaster.request_close()

    def _confirm_close(self) -> None:
        dlg = wx.MessageDialog(
            self._win,
            "Keep the proxy running in the tray, or quit?",
            __app_name__,
            wx.YES_NO | wx.CANCEL | wx.ICON_QUESTION,
        )
        dlg.SetYesNoCancelLabels("&Minimize to tray", "&Quit", "&Cancel")
        answer = dlg.ShowModal()
        dlg.Destroy()
        action = {wx.ID_YES: CLOSE_MINIMIZE, wx.ID_NO: CLOSE_QUIT}.get(answer, CLOSE_CANCEL)
        self._app.invoke("close_confirm_response", {"action": action})
