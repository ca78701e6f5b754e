"""
Course email content generator
Asks an external generation endpoint for a nurture/pitch email when a course
cycle has no stored content. Any failure yields empty content.
"""
import logging
from typing import Dict, Optional

import requests
from flask import current_app

logger = logging.getLogger(__name__)


class ContentGenerator:
    def __init__(self, url: str = '', api_key: str = '', timeout: int = 30):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    @property
    def enabled(self):
        return bool(self.url)

    def generate(self, course: Dict, email_type: str, email_index: int,
                 cycle_number: int = 1) -> Dict:
        """Returns {'subject', 'html_content'}; both empty when unavailable"""
        empty = {'subject': '', 'html_content': ''}
        if not self.enabled:
            return empty

        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"

        try:
            response = requests.post(self.url, json={
                'course': course,
                'email_type': email_type,
                'email_index': email_index,
                'cycle_number': cycle_number,
            }, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Content generation failed for {course.get('id')} {email_type} #{email_index}: {e}")
            return empty

        return {
            'subject': data.get('subject') or '',
            'html_content': data.get('html_content') or data.get('htmlContent') or '',
        }


_content_generator = None


def get_content_generator() -> ContentGenerator:
    global _content_generator
    if _content_generator is None:
        config = current_app.config
        _content_generator = ContentGenerator(
            url=config.get('CONTENT_GENERATOR_URL', ''),
            api_key=config.get('CONTENT_GENERATOR_API_KEY', ''),
            timeout=config.get('CONTENT_GENERATOR_TIMEOUT', 30),
        )
    return _content_generator


def set_content_generator(generator: Optional[ContentGenerator]):
    global _content_generator
    _content_generator = generator
