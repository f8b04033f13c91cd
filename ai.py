"""Gemini-backed helpers: species identification, note enrichment, dive advice.

Each call is a single request/response with no retries. AI features are
auxiliary, so failures are logged and a fallback value is returned instead
of an error: None for identification, the user's own notes for enrichment,
and a fixed message for advice.
"""

import json
import logging
import os
import uuid

from google import genai
from google.genai import types as genai_types

from storage import parse_image_data_url

logger = logging.getLogger('divelog.ai')

DEFAULT_MODEL = 'gemini-2.5-flash'

NO_KEY_MESSAGE = 'An API key is required to use AI features.'
ADVICE_UNAVAILABLE = 'The AI service is unavailable right now.'

_client = None


def _model():
    return os.environ.get('GEMINI_MODEL') or DEFAULT_MODEL


def _language():
    return os.environ.get('AI_RESPONSE_LANGUAGE') or 'Korean'


def get_client():
    """Return a cached genai.Client, or None when no API key is configured."""
    global _client
    api_key = os.environ.get('GEMINI_API_KEY') or os.environ.get('API_KEY')
    if not api_key:
        return None
    if _client is None:
        _client = genai.Client(api_key=api_key)
    return _client


SIGHTING_SCHEMA = genai_types.Schema(
    type=genai_types.Type.OBJECT,
    properties={
        'name': genai_types.Schema(type=genai_types.Type.STRING),
        'scientific_name': genai_types.Schema(type=genai_types.Type.STRING),
        'description': genai_types.Schema(type=genai_types.Type.STRING),
    },
    required=['name', 'description'],
)


def identify_marine_life(image_data_url, client=None):
    """Identify the main creature in a photo and return it as a sighting dict."""
    client = client or get_client()
    if client is None:
        logger.error('Gemini API key missing; cannot identify marine life')
        return None
    mime, raw = parse_image_data_url(image_data_url)
    try:
        response = client.models.generate_content(
            model=_model(),
            contents=[
                genai_types.Part.from_bytes(data=raw, mime_type=mime),
                'Identify the main marine creature in this image. '
                'Provide the name, scientific name, and a short description.',
            ],
            config=genai_types.GenerateContentConfig(
                response_mime_type='application/json',
                response_schema=SIGHTING_SCHEMA,
            ),
        )
        text = response.text
        if not text:
            return None
        data = json.loads(text)
    except Exception:
        logger.exception('Error identifying marine life')
        return None
    if not isinstance(data, dict) or not data.get('name'):
        logger.warning('Identification response missing a name: %r', data)
        return None
    return {
        'id': uuid.uuid4().hex,
        'name': data['name'],
        'scientific_name': data.get('scientific_name'),
        'description': data.get('description', ''),
        # the caller already holds the photo; it is stored by attaching it to the log
        'image_url': None,
    }


def enrich_dive_log_notes(notes, location, client=None):
    client = client or get_client()
    if client is None:
        return NO_KEY_MESSAGE
    prompt = (
        f'Dive Location: {location}. User Notes: {notes}.\n'
        'Please rewrite these notes to be more descriptive and professional for a dive log. '
        "Mention likely marine life if the location is famous, but keep it grounded in the user's notes. "
        f'Output in {_language()}.'
    )
    try:
        response = client.models.generate_content(model=_model(), contents=prompt)
        return response.text or notes
    except Exception:
        logger.exception('Error enriching notes')
        return notes


def get_dive_advice(question, client=None):
    client = client or get_client()
    if client is None:
        return NO_KEY_MESSAGE
    prompt = (
        'You are an expert scuba diving instructor and marine biologist. '
        f'Answer the following question for a diver: {question}. '
        f'Keep the answer helpful, safety-conscious, and concise. Output in {_language()}.'
    )
    try:
        response = client.models.generate_content(model=_model(), contents=prompt)
        return response.text or 'No answer could be generated.'
    except Exception:
        logger.exception('Error getting dive advice')
        return ADVICE_UNAVAILABLE
