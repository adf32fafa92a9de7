from gateway.transform import (
    convert_chat_messages_to_responses_input,
    convert_tools_chat_to_responses,
    fold_system_message,
    format_tool_choice_for_upstream,
    format_tools_for_upstream,
    normalize_model_name,
    normalize_usage,
    prompt_to_text,
)


def test_fold_system_message_moves_first_system_to_front():
    messages = [
        {"role": "user", "content": "hi"},
        {"role": "system", "content": "be brief"},
        {"role": "system", "content": "second"},
    ]
    out = fold_system_message(messages)
    assert out[0] == {"role": "user", "content": "be brief"}
    assert out[1] == {"role": "user", "content": "hi"}
    assert out[2]["role"] == "system"
    # input list untouched
    assert messages[1]["role"] == "system"


def test_text_and_assistant_messages_mapping():
    items = convert_chat_messages_to_responses_input(
        [
            {"role": "system", "content": "ignored"},
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": [{"type": "text", "text": "Hi there"}]},
            {"role": "user", "content": ""},
        ]
    )
    assert items == [
        {"type": "message", "role": "user", "content": [{"type": "input_text", "text": "Hello"}]},
        {"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "Hi there"}]},
    ]


def test_tool_call_round_trip_items():
    items = convert_chat_messages_to_responses_input(
        [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "call_1", "type": "function", "function": {"name": "ls", "arguments": "{\"p\":\".\"}"}},
                    {"id": "call_2", "type": "function", "function": {"name": "bad", "arguments": {"x": 1}}},
                ],
            },
            {"role": "tool", "tool_call_id": "call_1", "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]},
            {"role": "tool", "content": "orphan"},
        ]
    )
    assert items == [
        {"type": "function_call", "name": "ls", "arguments": "{\"p\":\".\"}", "call_id": "call_1"},
        {"type": "function_call_output", "call_id": "call_1", "output": "a\nb"},
    ]


def test_image_data_url_is_repadded_and_invalid_kept():
    # "hello" in url-safe base64 without padding
    good = "data:image/png;base64,aGVsbG8"
    bad = "data:image/png;base64,!!!not-base64!!!"
    items = convert_chat_messages_to_responses_input(
        [
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": good}},
                    {"type": "image_url", "image_url": bad},
                    {"type": "image_url", "image_url": {"url": "https://example.com/cat.png"}},
                ],
            }
        ]
    )
    parts = items[0]["content"]
    assert parts[0] == {"type": "input_image", "image_url": "data:image/png;base64,aGVsbG8="}
    assert parts[1]["image_url"] == bad
    assert parts[2]["image_url"] == "https://example.com/cat.png"


def test_empty_inputs_are_valid():
    assert convert_chat_messages_to_responses_input([]) == []
    assert convert_chat_messages_to_responses_input(None) == []
    assert convert_tools_chat_to_responses(None) == []


def test_tools_conversion_and_flat_format():
    tools = convert_tools_chat_to_responses(
        [
            {"type": "function", "function": {"name": "get_weather", "parameters": {"type": "object"}}},
            {"type": "function", "function": {"description": "nameless"}},
            {"type": "retrieval"},
        ]
    )
    assert tools == [
        {
            "type": "function",
            "function": {"name": "get_weather", "description": "", "parameters": {"type": "object"}},
        }
    ]
    assert format_tools_for_upstream(tools, "flat") == [
        {"type": "function", "name": "get_weather", "parameters": {"type": "object"}}
    ]
    assert format_tools_for_upstream(tools, "nested") == tools


def test_tool_choice_formatting():
    named = {"type": "function", "function": {"name": "get_weather"}}
    assert format_tool_choice_for_upstream(named, "flat") == {"type": "function", "name": "get_weather"}
    assert format_tool_choice_for_upstream(named, "nested") == named
    assert format_tool_choice_for_upstream("none", "flat") == "none"
    assert format_tool_choice_for_upstream("sometimes", "flat") == "auto"
    assert format_tool_choice_for_upstream(None, "flat") == "auto"
    assert format_tool_choice_for_upstream(42, "flat") == "auto"


def test_normalize_model_name():
    assert normalize_model_name("gpt5") == "gpt-5"
    assert normalize_model_name("gpt-5-latest") == "gpt-5"
    assert normalize_model_name("gpt-5-high") == "gpt-5"
    assert normalize_model_name("gpt5-codex:latest") == "gpt-5-codex"
    assert normalize_model_name("gpt-5-codex_low") == "gpt-5-codex"
    assert normalize_model_name("codex") == "codex-mini-latest"
    assert normalize_model_name("some-other-model") == "some-other-model"
    assert normalize_model_name("") == "gpt-5"
    assert normalize_model_name(None) == "gpt-5"
    assert normalize_model_name("gpt5", override="debug-model") == "debug-model"


def test_normalize_usage():
    assert normalize_usage({"input_tokens": 3, "output_tokens": 4}) == {
        "prompt_tokens": 3,
        "completion_tokens": 4,
        "total_tokens": 7,
    }
    out = normalize_usage(
        {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 10, "cache_read_input_tokens": 5,
         "cache_creation_input_tokens": "n/a"}
    )
    assert out == {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 10, "cache_read_input_tokens": 5}
    assert normalize_usage(None) is None
    assert normalize_usage("x") is None


def test_prompt_to_text():
    assert prompt_to_text("hi") == "hi"
    assert prompt_to_text(["a", "b", 3]) == "ab"
    assert prompt_to_text(None, "tail") == "tail"
    assert prompt_to_text(None) == ""
