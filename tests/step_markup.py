"""Builders for Azure steps markup used across the tests."""
from html import escape


def step_xml(step_id, action, expected=""):
    return (
        f'<step id="{step_id}" type="ActionStep">'
        f'<parameterizedString isformatted="true">{escape(action)}</parameterizedString>'
        f'<parameterizedString isformatted="true">{escape(expected)}</parameterizedString>'
        '<description/></step>'
    )


def compref_xml(placement_id, ref_id, *children):
    if not children:
        return f'<compref id="{placement_id}" ref="{ref_id}" />'
    return f'<compref id="{placement_id}" ref="{ref_id}">{"".join(children)}</compref>'


def steps_xml(*nodes):
    return f'<steps id="0" last="{len(nodes)}">{"".join(nodes)}</steps>'


def work_item(item_id, markup, title="", rev=1, item_type="Test Case", **fields):
    data = {
        "System.WorkItemType": item_type,
        "System.Title": title or f"Work item {item_id}",
        "Microsoft.VSTS.TCM.Steps": markup,
    }
    data.update(fields)
    return {"id": item_id, "rev": rev, "fields": data}
