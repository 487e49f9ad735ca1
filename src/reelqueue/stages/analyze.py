"""Analyze stage: transcribe the audio track and ask a chat model for the best clip."""

import json
from typing import Optional

import openai
from openai import OpenAI

from ..errors import StageFailure
from ..logging import get_logger
from ..models import AnalysisResult
from .base import Analyzer, MediaHandle

logger = get_logger("stages.analyze")

SYSTEM_PROMPT = (
    "You are a video editor. Given a timestamped transcript, choose the most "
    "interesting 15-30 second segment for a short-form clip. Respond with a JSON "
    'object {"start": <seconds>, "end": <seconds>, "summary": "<one sentence>"}.'
)


def format_transcript(transcription) -> str:
    """Render a verbose_json transcription as "[start-end] text" lines."""
    segments = getattr(transcription, "segments", None) or []
    lines = []
    for seg in segments:
        start = _field(seg, "start")
        end = _field(seg, "end")
        text = (_field(seg, "text") or "").strip()
        if text:
            lines.append(f"[{float(start):.1f}-{float(end):.1f}] {text}")
    if lines:
        return "\n".join(lines)
    return (getattr(transcription, "text", "") or "").strip()


def _field(obj, name):
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def parse_analysis(content: Optional[str]) -> AnalysisResult:
    """Parse the model's JSON answer.

    Raises:
        ValueError: If content is empty, not JSON or lacks start/end
    """
    if not content:
        raise ValueError("empty response")
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("response is not a JSON object")
    return AnalysisResult(
        start=float(data["start"]),
        end=float(data["end"]),
        summary=str(data.get("summary", "")),
    )


class OpenAIAnalyzer(Analyzer):
    """Whisper transcription + chat completion segment selection."""

    def __init__(
        self,
        api_key: str,
        transcription_model: str = "whisper-1",
        model: str = "gpt-4",
        timeout_s: float = 300.0,
        client: Optional[OpenAI] = None,
    ):
        self.transcription_model = transcription_model
        self.model = model
        self.client = client or OpenAI(api_key=api_key, timeout=timeout_s)

    def transcribe(self, handle: MediaHandle) -> str:
        with open(handle.path, "rb") as audio:
            transcription = self.client.audio.transcriptions.create(
                model=self.transcription_model,
                file=audio,
                response_format="verbose_json",
            )
        return format_transcript(transcription)

    def analyze(self, handle: MediaHandle) -> AnalysisResult:
        try:
            transcript = self.transcribe(handle)
            if not transcript:
                raise StageFailure(self.stage, "transcript is empty")
            logger.info("transcribed", characters=len(transcript))

            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": transcript},
                ],
                response_format={"type": "json_object"},
            )
            result = parse_analysis(response.choices[0].message.content)
        except openai.OpenAIError as e:
            raise StageFailure(self.stage, f"OpenAI request failed: {e}")
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StageFailure(self.stage, f"unusable model response: {e}")
        except OSError as e:
            raise StageFailure(self.stage, f"cannot read audio: {e}")

        logger.info("segment_suggested", start=result.start, end=result.end)
        return result
