"""Browser Use wrapper that turns natural-language instructions into browser actions.

The engine never launches a browser itself: it attaches to one that is
already listening on a CDP WebSocket URL, which the lifecycle manager provides.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from browser_use import Agent, ChatAnthropic, ChatAzureOpenAI
from browser_use.browser import BrowserProfile, BrowserSession
from browser_use.llm.messages import UserMessage
from pydantic import BaseModel

from agent_browse.config import Credential, MissingCredentialError
from agent_browse.security import Blocklist

logger = logging.getLogger(__name__)

SINGLE_ACTION_PROMPT = (
    "\n\nYou are executing one instruction on the page that is already open. "
    "Do not navigate away unless the instruction asks for it. "
    "Finish as soon as the instruction has been carried out."
)

EXTRACT_PROMPT = (
    "Extract the following from the current page without navigating away: {instruction}\n"
    "Report only what is on the page."
)

OBSERVE_PROMPT = (
    "You are looking at a web page and must list the actions a user could take that match a query.\n\n"
    "Respond with one candidate per line in this exact format:\n"
    "ACTION: <short description of the element and what interacting with it does>\n"
    "If nothing matches, respond with NONE.\n\n"
    "Query: {query}\n\n"
    "Page URL: {url}\n"
    "Page title: {title}\n\n"
    "Interactive elements:\n{elements}"
)


class AutomationError(RuntimeError):
    """The automation engine could not carry out an instruction."""


def prohibited_domain_patterns(blocklist: Blocklist | None) -> list[str] | None:
    """Browser Use domain patterns for the bare entries of ``blocklist``.

    Each bare entry is listed as itself and as ``*.entry`` so subdomains are
    refused too. Host+path entries cannot be expressed as domain patterns and
    are enforced by the agent step check instead.
    """
    if blocklist is None:
        return None
    patterns: list[str] = []
    for entry in blocklist.entries():
        if "/" in entry:
            continue
        patterns.extend([entry, f"*.{entry}"])
    return patterns


def load_llm(credential: Credential | None) -> ChatAnthropic | ChatAzureOpenAI:
    """Build the chat model for a credential.

    Raises:
        MissingCredentialError: If no credential was supplied
    """
    if credential is None:
        raise MissingCredentialError("No API credential configured for the automation engine.")

    if credential.provider == "anthropic":
        return ChatAnthropic(model=credential.model, api_key=credential.api_key)

    model_config = {
        "model": credential.model,
        "api_key": credential.api_key,
        "azure_endpoint": credential.endpoint,
    }
    # Pass api_version only if explicitly set (optional for most deployments)
    if credential.api_version:
        model_config["api_version"] = credential.api_version

    return ChatAzureOpenAI(**model_config)  # type: ignore[arg-type]  # pydantic coerces string values at runtime


class AutomationEngine:
    """Browser Use session attached to an existing browser over CDP."""

    def __init__(
        self,
        credential: Credential | None = None,
        downloads_dir: Path | None = None,
        act_max_steps: int = 10,
        blocklist: Blocklist | None = None,
    ):
        """Initialise the engine.

        Args:
            credential: LLM credential; only needed for act, extract and observe
            downloads_dir: Directory the browser should save downloads into
            act_max_steps: Step cap for a single natural-language instruction
            blocklist: Domains the agent may not navigate to on its own
        """
        self.credential = credential
        self.downloads_dir = downloads_dir
        self.act_max_steps = act_max_steps
        self.blocklist = blocklist
        self._browser: BrowserSession | None = None
        self._llm: ChatAnthropic | ChatAzureOpenAI | None = None
        self._agent: Agent | None = None
        self._blocked_visit: str | None = None

    @property
    def connected(self) -> bool:
        return self._browser is not None

    def _require_browser(self) -> BrowserSession:
        if self._browser is None:
            raise AutomationError("Automation engine is not attached to a browser")
        return self._browser

    def _get_llm(self) -> ChatAnthropic | ChatAzureOpenAI:
        if self._llm is None:
            self._llm = load_llm(self.credential)
        return self._llm

    async def attach(self, ws_url: str) -> None:
        """Connect to the browser behind a CDP WebSocket debugger URL."""
        profile = BrowserProfile(
            cdp_url=ws_url,
            is_local=True,
            # The browser outlives this process; stopping the session must not close it
            keep_alive=True,
            downloads_path=str(self.downloads_dir) if self.downloads_dir else None,
            prohibited_domains=prohibited_domain_patterns(self.blocklist),
        )
        browser = BrowserSession(browser_profile=profile)
        await browser.start()
        self._browser = browser

    async def _page_session(self):
        """CDP session for the focused page (the first page after attach)."""
        return await self._require_browser().get_or_create_cdp_session()

    async def page_target_id(self) -> str:
        """CDP target ID of the active page."""
        cdp_session = await self._page_session()
        return cdp_session.target_id

    async def set_viewport(self, width: int, height: int) -> None:
        """Force a fixed viewport so screenshots have the same size on any display."""
        cdp_session = await self._page_session()
        await cdp_session.cdp_client.send.Emulation.setDeviceMetricsOverride(
            params={"width": width, "height": height, "deviceScaleFactor": 1, "mobile": False},
            session_id=cdp_session.session_id,
        )

    async def enable_downloads(self, downloads_dir: Path) -> None:
        """Allow downloads and direct them into ``downloads_dir``."""
        downloads_dir.mkdir(parents=True, exist_ok=True)
        await self._require_browser().cdp_client.send.Browser.setDownloadBehavior(
            params={"behavior": "allow", "downloadPath": str(downloads_dir), "eventsEnabled": True}
        )

    async def evaluate(self, expression: str) -> Any:
        """Evaluate a JavaScript expression in the page and return its value."""
        cdp_session = await self._page_session()
        result = await cdp_session.cdp_client.send.Runtime.evaluate(
            params={"expression": expression, "returnByValue": True},
            session_id=cdp_session.session_id,
        )
        if result.get("exceptionDetails"):
            details = result["exceptionDetails"]
            raise AutomationError(f"Evaluation failed: {details.get('text', 'unknown error')}")
        return result.get("result", {}).get("value")

    async def _wait_for_ready_state(self, accepted: tuple[str, ...], interval: float = 0.1) -> None:
        while True:
            try:
                state = await self.evaluate("document.readyState")
            except Exception as e:
                # The execution context is replaced while the new document commits
                logger.debug("readyState unavailable during navigation: %s", e)
                state = None
            if state in accepted:
                return
            await asyncio.sleep(interval)

    async def _goto(self, url: str, accepted: tuple[str, ...], timeout: float) -> None:
        cdp_session = await self._page_session()
        nav_result = await cdp_session.cdp_client.send.Page.navigate(
            params={"url": url},
            session_id=cdp_session.session_id,
        )
        if nav_result.get("errorText"):
            raise AutomationError(f"Navigation failed: {nav_result['errorText']}")
        await asyncio.wait_for(self._wait_for_ready_state(accepted), timeout=timeout)

    async def navigate(self, url: str, timeout: float = 30.0, fallback_timeout: float = 15.0) -> None:
        """Navigate the page, waiting for a full load and falling back to DOM-ready.

        Args:
            url: Absolute URL to open
            timeout: Seconds to wait for ``document.readyState == "complete"``
            fallback_timeout: Seconds for the retry, which also accepts ``"interactive"``
        """
        try:
            await self._goto(url, ("complete",), timeout)
        except (TimeoutError, AutomationError) as e:
            logger.info("Full load of %s did not finish (%s), retrying until DOM is ready", url, e)
            await self._goto(url, ("interactive", "complete"), fallback_timeout)

    async def _step_callback(self, browser_state, _agent_output, _step_number: int) -> None:
        """Callback for each agent step: stop the agent once it is on a blocked page.

        Args:
            browser_state: Browser state the step was planned against
            _agent_output: Agent output for this step (unused; required by callback signature)
            _step_number: Current step number (unused; required by callback signature)
        """
        if self.blocklist is None or self._agent is None:
            return
        blocked = self.blocklist.is_blocked(browser_state.url or "")
        if blocked:
            logger.warning("Agent reached restricted domain %s; stopping", blocked)
            self._blocked_visit = blocked
            self._agent.stop()

    async def _run_agent(self, agent: Agent):
        """Run ``agent`` and refuse the result if it ended up on a blocked page."""
        self._agent, self._blocked_visit = agent, None
        try:
            history = await agent.run()
        finally:
            self._agent = None

        if self.blocklist is not None and self._blocked_visit is None:
            current_url = await self._require_browser().get_current_page_url()
            self._blocked_visit = self.blocklist.is_blocked(current_url or "")

        if self._blocked_visit:
            blocked, self._blocked_visit = self._blocked_visit, None
            await self._leave_page()
            raise AutomationError(f'BLOCKED: Agent navigated to restricted domain "{blocked}".')
        return history

    async def _leave_page(self) -> None:
        cdp_session = await self._page_session()
        await cdp_session.cdp_client.send.Page.navigate(
            params={"url": "about:blank"},
            session_id=cdp_session.session_id,
        )

    async def act(self, instruction: str) -> str:
        """Carry out a natural-language instruction on the current page.

        Returns:
            The agent's final report

        Raises:
            AutomationError: If the agent did not complete the instruction
        """
        agent = Agent(
            task=instruction,
            llm=self._get_llm(),
            browser_session=self._require_browser(),
            max_steps=self.act_max_steps,
            use_vision=False,
            extend_system_message=SINGLE_ACTION_PROMPT,
            register_new_step_callback=self._step_callback,
        )
        history = await self._run_agent(agent)
        self._raise_if_unsuccessful(history, instruction)
        return history.final_result() or ""

    async def extract(self, instruction: str, schema: type[BaseModel] | None = None) -> Any:
        """Extract data from the current page, optionally shaped by a pydantic model.

        Returns:
            A dict when a schema was given, otherwise the parsed JSON or raw text the agent reported
        """
        agent_kwargs: dict[str, Any] = {}
        if schema is not None:
            agent_kwargs["output_model_schema"] = schema

        agent = Agent(
            task=EXTRACT_PROMPT.format(instruction=instruction),
            llm=self._get_llm(),
            browser_session=self._require_browser(),
            max_steps=self.act_max_steps,
            use_vision=False,
            register_new_step_callback=self._step_callback,
            **agent_kwargs,
        )
        history = await self._run_agent(agent)
        self._raise_if_unsuccessful(history, instruction)

        if schema is not None:
            structured = history.structured_output
            if structured is not None:
                return structured.model_dump(by_alias=True)

        text = history.final_result()
        if text is None:
            return None
        try:
            return json.loads(text)
        except (json.JSONDecodeError, ValueError):
            return text

    async def observe(self, query: str) -> list[str]:
        """List candidate actions on the current page that match ``query``."""
        browser = self._require_browser()
        state = await browser.get_browser_state_summary(include_screenshot=False)
        elements = state.dom_state.llm_representation() if state.dom_state else ""

        prompt = OBSERVE_PROMPT.format(query=query, url=state.url, title=state.title, elements=elements or "(none)")
        response = await self._get_llm().ainvoke([UserMessage(content=prompt)])
        return self._parse_observations(str(response.completion))

    def _parse_observations(self, text: str) -> list[str]:
        """Parse ``ACTION:`` lines from an observe response."""
        if text.strip().upper() == "NONE":
            return []
        actions = []
        for line in text.split("\n"):
            line = line.strip()
            if line.upper().startswith("ACTION:"):
                action = line[len("ACTION:") :].strip()
                if action:
                    actions.append(action)
        return actions

    def _raise_if_unsuccessful(self, history, instruction: str) -> None:
        if history.is_done() and history.is_successful() is not False:
            return

        errors = [error for error in history.errors() if error]
        if errors:
            raise AutomationError(errors[-1].strip())
        final = history.final_result()
        raise AutomationError(final or f"Could not complete: {instruction}")

    async def screenshot(self, path: Path) -> Path:
        """Save a PNG screenshot of the current viewport to ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        await self._require_browser().take_screenshot(path=str(path))
        return path

    async def close_browser(self) -> None:
        """Ask the browser itself to exit, then drop the connection."""
        browser = self._require_browser()
        try:
            await browser.cdp_client.send.Browser.close()
        finally:
            self._browser = None
            try:
                await browser.stop()
            except Exception as e:
                # The WebSocket is already gone once the browser exits
                logger.debug("Session stop after Browser.close failed: %s", e)

    async def detach(self) -> None:
        """Disconnect from the browser, leaving it running."""
        if self._browser is None:
            return
        browser = self._browser
        self._browser = None
        await browser.stop()
