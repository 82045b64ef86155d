import os
import time

from selenium.webdriver.common.by import By
from selenium.webdriver.chrome.options import Options
from selenium.common.exceptions import WebDriverException, ElementClickInterceptedException

from logging_setup import get_logger
from accounts import DESKTOP_USER_AGENT

logger = get_logger('crown_browser')

BY_ALIASES = {
    "css": By.CSS_SELECTOR,
    "xpath": By.XPATH,
    "id": By.ID,
    "name": By.NAME,
    "text": By.LINK_TEXT,
}


class BrowserPage:
    """
    Selenium Wire backed page implementing the driver primitives the login
    flow relies on: navigate, locate, type, click, evaluate and screenshot.

    Selectors are CSS strings or (by, value) tuples; by may be a selenium By
    constant or one of the short aliases in BY_ALIASES.
    """

    def __init__(self, headless=False, proxy=None, user_agent=None, profile_path=None,
                 screenshot_dir=".", driver=None):
        self.proxy = proxy
        self.user_agent = user_agent or DESKTOP_USER_AGENT
        self.profile_path = profile_path
        self.screenshot_dir = screenshot_dir
        self.driver = driver
        self.__closed = False
        if self.driver is None:
            self.setup_driver(headless)

    def setup_driver(self, headless):
        """Set up the Chrome WebDriver with Selenium Wire for proxy authentication."""
        from seleniumwire import webdriver

        options = Options()
        if headless:
            options.add_argument("--headless=new")
        options.add_argument('--no-sandbox')
        options.add_argument('--disable-dev-shm-usage')
        options.add_argument('--disable-gpu')
        options.add_argument('--window-size=1920,1080')
        options.add_argument("--disable-extensions")
        options.add_argument("--memory-pressure-off")
        options.add_argument(f"--user-agent={self.user_agent}")
        if self.profile_path:
            os.makedirs(self.profile_path, exist_ok=True)
            options.add_argument(f"--user-data-dir={os.path.abspath(self.profile_path)}")
        options.page_load_strategy = 'eager'

        seleniumwire_options = {}
        if self.proxy:
            proxy_url = self.proxy if "://" in self.proxy else f"http://{self.proxy}"
            seleniumwire_options = {
                "proxy": {
                    "http": proxy_url,
                    "https": proxy_url,
                    "no_proxy": "localhost,127.0.0.1",
                }
            }
            logger.info("Configured Selenium Wire proxy")

        try:
            if os.getenv("CHROMEDRIVER_AUTO_INSTALL", "").lower() in ("1", "true", "yes"):
                from selenium.webdriver.chrome.service import Service
                from webdriver_manager.chrome import ChromeDriverManager
                self.driver = webdriver.Chrome(
                    service=Service(ChromeDriverManager().install()),
                    seleniumwire_options=seleniumwire_options,
                    options=options,
                )
            else:
                self.driver = webdriver.Chrome(seleniumwire_options=seleniumwire_options, options=options)
            logger.info("🌐 Chrome driver started")
        except WebDriverException as e:
            logger.error(f"Error setting up ChromeDriver: {e}")
            raise

    def __by(self, selector):
        if isinstance(selector, (tuple, list)):
            by, value = selector
            return BY_ALIASES.get(by, by), value
        return By.CSS_SELECTOR, selector

    def navigate(self, url):
        self.driver.get(url)
        return True

    def locate(self, selector):
        """Return the first visible element matching selector, or None"""
        by, value = self.__by(selector)
        try:
            elements = self.driver.find_elements(by, value)
        except WebDriverException:
            return None
        for element in elements:
            try:
                if element.is_displayed():
                    return element
            except WebDriverException:
                continue
        return None

    def type(self, element, text):
        try:
            element.clear()
            element.send_keys(text)
        except WebDriverException:
            # Some inputs ignore send_keys until focused; set the value directly
            self.driver.execute_script(
                "arguments[0].value=arguments[1]; arguments[0].dispatchEvent(new Event('input', { bubbles: true })); arguments[0].dispatchEvent(new Event('change', { bubbles: true }));",
                element, text,
            )

    def click(self, element):
        try:
            element.click()
        except ElementClickInterceptedException:
            self.driver.execute_script("arguments[0].scrollIntoView({block:'center'});", element)
            self.driver.execute_script("arguments[0].click();", element)

    def evaluate(self, script, *args):
        if not script.lstrip().startswith("return"):
            script = f"return {script}"
        return self.driver.execute_script(script, *args)

    def screenshot(self, prefix="login_error"):
        """Save a screenshot and return its path"""
        timestamp = time.strftime("%Y%m%d-%H%M%S")
        path = os.path.join(self.screenshot_dir, f"{prefix}_{timestamp}.png")
        self.driver.save_screenshot(path)
        return path

    def get_cookies(self):
        return self.driver.get_cookies()

    def is_closed(self):
        if self.__closed or self.driver is None:
            return True
        try:
            return not self.driver.window_handles
        except WebDriverException:
            return True

    def close(self):
        """Close the browser if it's open"""
        if self.driver and not self.__closed:
            try:
                self.driver.quit()
            except WebDriverException as e:
                logger.error(f"Error closing WebDriver: {e}")
        self.__closed = True
        self.driver = None
