"""Prompt profiles for the planner, verifier, executor and synthesizer roles."""

import json
from typing import Any, Dict, List, Sequence

from .schemas import KnowledgeEntry, PlanStep, StepResult, ToolSpec


PLANNER_SYSTEM = "You are a research planning expert. Create detailed, structured research plans."
VERIFIER_SYSTEM = "You are a verification expert. Validate plans and identify issues."
EXECUTOR_SYSTEM = "You are a task execution expert. Execute research tasks accurately."
SYNTHESIZER_SYSTEM = "You are a synthesis expert. Combine information into coherent, well-sourced reports."
POLICY_SYSTEM = "You are the policy engine for a research orchestrator. Answer with JSON only."

PLAN_FORMAT = """
<plan>
  <step id="1">
    <title>Brief title</title>
    <description>Detailed description of what to do</description>
    <tools>web_search,fetch_url</tools>
    <dependencies></dependencies>
  </step>
  <step id="2">
    <title>Brief title</title>
    <description>Detailed description</description>
    <tools>extract_data</tools>
    <dependencies>1</dependencies>
  </step>
  <!-- More steps as needed -->
</plan>
"""

STEP_RESULT_FORMAT = """
{
  "data": { "...": "your findings" },
  "sources": [
    { "title": "...", "url": "...", "snippet": "...", "relevance": 0.9 }
  ],
  "confidence": 0.85,
  "summary": "Brief summary of findings"
}
"""


def messages(system: str, prompt: str) -> List[Dict[str, str]]:
    return [{"role": "system", "content": system}, {"role": "user", "content": prompt}]


def _tool_lines(tools: Sequence[ToolSpec]) -> str:
    return "\n".join(f"- {tool.name}: {tool.description}" for tool in tools)


def build_plan_prompt(query: str, tools: Sequence[ToolSpec], max_steps: int = 8) -> str:
    upper = max(1, min(8, max_steps))
    lower = min(3, upper)
    return f"""Create a detailed, structured research plan for the following query.

Query: "{query}"

Available tools:
{_tool_lines(tools)}

Create a plan with {lower}-{upper} steps that will comprehensively answer this query. Each step should:
1. Have a clear, specific objective
2. Specify which tools to use (only from the list above)
3. Identify dependencies on previous steps by their id
4. Be executable and verifiable

Output your plan in the following XML format:
{PLAN_FORMAT}
Create the plan now:"""


def _step_payload(steps: Sequence[PlanStep]) -> List[Dict[str, Any]]:
    return [
        {
            "id": step.id,
            "title": step.title,
            "description": step.description,
            "tools": step.tools,
            "dependencies": step.dependencies,
        }
        for step in steps
    ]


def build_verify_prompt(steps: Sequence[PlanStep], tool_names: Sequence[str]) -> str:
    plan_json = json.dumps(_step_payload(steps), indent=2)
    return f"""Validate the following research plan.

Available Tools: {", ".join(tool_names)}

Plan to verify:
{plan_json}

Check for:
1. All referenced tools exist in the available tools list
2. Dependencies are valid (no circular dependencies, referenced steps exist)
3. Steps are specific and executable
4. The plan logically flows from start to finish
5. No redundant or unnecessary steps

Respond in JSON only:
{{
  "is_valid": true,
  "issues": ["issue 1", "issue 2"],
  "suggestions": ["suggestion 1", "suggestion 2"]
}}"""


def build_execute_prompt(step: PlanStep, context: Sequence[StepResult], tools: Sequence[ToolSpec]) -> str:
    if context:
        context_json = json.dumps([item.model_dump(mode="json") for item in context], indent=2)
        context_str = f"Context from previous steps:\n{context_json}"
    else:
        context_str = "No previous context available."
    tool_str = _tool_lines(tools) if tools else "- none"
    return f"""Execute the following research step:

Step: {step.title}
Description: {step.description}
Tools available:
{tool_str}

{context_str}

Execute this step and return results in JSON format:
{STEP_RESULT_FORMAT}
Note: tool execution is simulated, so provide realistic research data relevant to the step's objective."""


def build_synthesize_prompt(
    query: str,
    steps: Sequence[PlanStep],
    knowledge: Sequence[KnowledgeEntry],
) -> str:
    steps_data = [
        {"title": step.title, "result": step.result.model_dump(mode="json")}
        for step in steps
        if step.result is not None
    ]
    knowledge_items = "\n\n".join(entry.content for entry in knowledge)
    return f"""Create a comprehensive research report.

Original Query: "{query}"

Research Steps Completed:
{json.dumps(steps_data, indent=2)}

Knowledge Base:
{knowledge_items or "(empty)"}

Create a well-structured research report that:
1. Directly answers the original query
2. Synthesizes information from all steps
3. Includes proper citations and sources
4. Uses clear, professional language
5. Highlights key findings and insights
6. Acknowledges any limitations or uncertainties

Format the report in Markdown with:
- Executive Summary
- Key Findings (bullet points)
- Detailed Analysis (sections as needed)
- Sources (numbered references)
- Conclusion

Write the report now:"""


def build_policy_prompt(query: str, steps: Sequence[PlanStep], completed: int, issues: Sequence[str]) -> str:
    status_json = json.dumps([{"title": s.title, "status": s.status} for s in steps], indent=2)
    return f"""Decide the next action for this research run.

Query: "{query}"
Steps completed: {completed}/{len(steps)}
Issues encountered: {"; ".join(issues) if issues else "None"}

Current plan status:
{status_json}

Options:
- "continue": keep executing the plan
- "replan": the plan has issues and a new plan is needed
- "stop": enough information gathered, synthesize results

Respond in JSON only:
{{
  "action": "continue" | "replan" | "stop",
  "reason": "explanation for this decision",
  "confidence": 0.85
}}"""
