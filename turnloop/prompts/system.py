"""Prompts used by the turn loop itself.

The system prompt can be replaced through configuration; the compression
and next-speaker prompts are fixed because the loop parses their output.
"""

from __future__ import annotations

import platform
from datetime import datetime
from typing import Any, Dict, Optional

# =============================================================================
# System prompt
# =============================================================================

CORE_SYSTEM_PROMPT = """You are an interactive agent that helps users with software engineering tasks.

## Guidelines
- Use the available tools to inspect and change the workspace; do not guess file contents
- Make targeted changes that follow the conventions already in the project
- When a tool call fails, read the error and adjust instead of repeating the same call
- Keep replies short; the user sees tool output separately
- When the task is done, say so plainly and stop"""


def get_core_system_prompt(override: Optional[str] = None) -> str:
    return override or CORE_SYSTEM_PROMPT


# =============================================================================
# Environment seed
# =============================================================================

ENVIRONMENT_CONTEXT = """This is turnloop. We are setting up the context for our chat.
Today's date is {today}.
My operating system is: {platform}
I'm currently working in the directory: {cwd}"""

ENVIRONMENT_ACK = "Got it. Thanks for the context!"


def get_environment_context(cwd: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return ENVIRONMENT_CONTEXT.format(
        today=now.strftime("%A, %B %d, %Y"),
        platform=platform.system().lower(),
        cwd=cwd,
    )


# =============================================================================
# History compression
# =============================================================================

COMPRESSION_PROMPT = """You are the component that summarizes internal chat history into a given structure.

When the conversation history grows too large, you will be invoked to distill the entire history into a concise, structured XML snapshot. This snapshot is CRITICAL, as it will become the agent's *only* memory of the past. The agent will resume its work based solely on this snapshot. All crucial details, plans, errors, and user directives MUST be preserved.

First, you will think through the entire history in a private <scratchpad>. Review the user's overall goal, the agent's actions, tool outputs, file modifications, and any unresolved questions. Identify every piece of information that is essential for future actions.

After your reasoning is complete, generate the final <state_snapshot> XML object. Be incredibly dense with information. Omit any irrelevant conversational filler.

The structure MUST be as follows:

<state_snapshot>
    <overall_goal>
        <!-- A single, concise sentence describing the user's high-level objective. -->
    </overall_goal>

    <key_knowledge>
        <!-- Crucial facts, conventions, and constraints the agent must remember. Use bullet points. -->
    </key_knowledge>

    <file_system_state>
        <!-- Files that have been created, read, modified, or deleted, with their status and findings. -->
    </file_system_state>

    <recent_actions>
        <!-- A summary of the last few significant agent actions and their outcomes. Focus on facts. -->
    </recent_actions>

    <current_plan>
        <!-- The agent's step-by-step plan. Mark completed steps. -->
    </current_plan>
</state_snapshot>"""

COMPRESSION_REQUEST = "First, reason in your scratchpad. Then, generate the <state_snapshot>."

COMPRESSION_ACK = "Got it. Thanks for the additional context!"


# =============================================================================
# Next speaker check
# =============================================================================

NEXT_SPEAKER_PROMPT = """Analyze *only* the content and structure of your immediately preceding response (your last turn in the conversation history). Based *strictly* on that response, determine who should logically speak next: the 'user' or the 'model' (you).

**Decision Rules (apply in order):**
1.  **Model Continues:** If your last response explicitly states an immediate next action *you* intend to take (e.g., "Next, I will...", "Now I'll process...", "Moving on to analyze...", indicates an intended tool call that didn't execute), OR if the response seems clearly incomplete (cut off mid-thought without a natural conclusion), then the **'model'** should speak next.
2.  **Question to User:** If your last response ends with a direct question specifically addressed *to the user*, then the **'user'** should speak next.
3.  **Waiting for User:** If your last response completed a thought, statement, or task *and* does not meet the criteria for Rule 1 (Model Continues) or Rule 2 (Question to User), it implies a pause expecting user input or reaction. In this case, the **'user'** should speak next.

**Output Format:**
Respond *only* in JSON format according to the following schema. Do not include any text outside the JSON structure.
```json
{
  "type": "object",
  "properties": {
    "reasoning": {
        "type": "string",
        "description": "Brief explanation justifying the 'next_speaker' choice based *strictly* on the applicable rule and the content/structure of the preceding turn."
    },
    "next_speaker": {
      "type": "string",
      "enum": ["user", "model"],
      "description": "Who should speak next based *only* on the preceding turn and the decision rules."
    }
  },
  "required": ["next_speaker", "reasoning"]
}
```"""

NEXT_SPEAKER_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "reasoning": {
            "type": "string",
            "description": "Brief explanation justifying the 'next_speaker' choice.",
        },
        "next_speaker": {
            "type": "string",
            "enum": ["user", "model"],
            "description": "Who should speak next based only on the preceding turn.",
        },
    },
    "required": ["reasoning", "next_speaker"],
}

CONTINUE_REQUEST = "Please continue."
