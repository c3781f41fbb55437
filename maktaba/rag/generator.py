import base64
import logging
import re

from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import ModelInference
from ibm_watsonx_ai.metanames import GenTextParamsMetaNames as GenParams

from maktaba.config import Settings

logger = logging.getLogger(__name__)


class GeneratorClient:
    """Thin watsonx.ai wrapper that can talk to any model id in a cascade.

    One ``ModelInference`` is built per model id on first use and reused
    afterwards.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.credentials = Credentials(
            api_key=settings.ibm_cloud_api_key,
            url=f"https://{settings.watsonx_region}.ml.cloud.ibm.com",
        )
        self._models: dict[str, ModelInference] = {}

    def _model(self, model_id: str) -> ModelInference:
        if model_id not in self._models:
            self._models[model_id] = ModelInference(
                model_id=model_id,
                project_id=self.settings.watsonx_project_id,
                credentials=self.credentials,
            )
        return self._models[model_id]

    def clean_output(self, text: str) -> str:
        """Remove prompt artifacts and structure labels from model output."""
        cleaned = text

        # Code fences some models wrap plain text in
        cleaned = re.sub(r"^```[^\n]*\n", "", cleaned.strip())
        cleaned = re.sub(r"\n```$", "", cleaned)

        # Placeholder citations
        cleaned = re.sub(r"\[Source\s+\d+\]", "", cleaned, flags=re.IGNORECASE)
        cleaned = re.sub(
            r"\(Source\s+\d+(?:,\s*Source\s+\d+)*\)", "", cleaned, flags=re.IGNORECASE
        )

        # Leading answer label echoed back from the prompt
        cleaned = re.sub(
            r"^\s*\**(?:Answer|Corrected text|Translation|Keywords|الإجابة|النص المصحح)\**\s*:\s*",
            "",
            cleaned,
            flags=re.IGNORECASE,
        )

        # Bold headings like "**Note:**" at line start
        cleaned = re.sub(r"^\*\*[^*\n]{1,40}\*\*:?\s*$", "", cleaned, flags=re.MULTILINE)

        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
        return cleaned.strip()

    def generate(
        self,
        prompt: str,
        model_id: str,
        temperature: float | None = None,
        max_new_tokens: int = 2048,
    ) -> str:
        """Generate text from a raw prompt with a single model.

        Args:
            prompt: Full prompt string.
            model_id: watsonx.ai model identifier to call.
            temperature: Sampling temperature, defaults to settings.
            max_new_tokens: Generation budget.

        Returns:
            Cleaned generated text (possibly empty).
        """
        if temperature is None:
            temperature = self.settings.temperature
        params = {
            GenParams.TEMPERATURE: float(temperature),
            GenParams.MAX_NEW_TOKENS: max_new_tokens,
            GenParams.TRUNCATE_INPUT_TOKENS: 0,
        }
        client = self._model(model_id)

        raw_answer = ""
        try:
            stream_resp = client.generate_text_stream(prompt=prompt, params=params)
            text_parts: list[str] = []
            for chunk in stream_resp:
                text_parts.append(str(chunk))
            raw_answer = "".join(text_parts).strip()
        except Exception as e:
            logger.debug(f"Streaming failed on {model_id}: {e}, using non-stream call")

        if not raw_answer:
            response = client.generate(prompt=prompt, params=params)
            data = (
                response.get_result() if hasattr(response, "get_result") else response
            )
            if isinstance(data, str):
                raw_answer = data
            elif isinstance(data, dict):
                if data.get("results"):
                    raw_answer = data["results"][0].get("generated_text", "")
                elif "generated_text" in data:
                    raw_answer = data["generated_text"]
                else:
                    raw_answer = str(data)
            elif hasattr(response, "generated_text"):
                raw_answer = response.generated_text
            else:
                raw_answer = str(data)

        return self.clean_output(raw_answer)

    def read_image(self, prompt: str, image_png: bytes, model_id: str) -> str:
        """Send a rendered page image to a vision model and return its text."""
        encoded = base64.b64encode(image_png).decode("ascii")
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:image/png;base64,{encoded}"},
                    },
                ],
            }
        ]
        response = self._model(model_id).chat(
            messages=messages, params={"temperature": 0.0, "max_tokens": 4096}
        )
        choices = response.get("choices") if isinstance(response, dict) else None
        if not choices:
            return ""
        content = choices[0].get("message", {}).get("content") or ""
        return self.clean_output(content)
