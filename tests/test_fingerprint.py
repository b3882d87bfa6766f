from clinops.fingerprint import find_item, fingerprint_note, fingerprint_text, render_note


def test_render_keeps_section_order_and_markers(make_note):
    text = render_note(make_note())
    assert text.startswith("--- SUBJECTIVE ---")
    assert text.index("--- OBJECTIVE ---") < text.index("--- ASSESSMENT_AND_PLAN ---")
    assert "HISTORY_OF_PRESENT_ILLNESS:\nPatient presents with chronic eczema, stable." in text
    assert "ASSESSMENT:\nEczema - continue triamcinolone" in text


def test_render_keeps_only_hpi_intro_paragraph(make_note):
    note = make_note(hpi="Intro paragraph.\n\nTemplate boilerplate that changes every visit.")
    text = render_note(note)
    assert "Intro paragraph." in text
    assert "boilerplate" not in text


def test_procedure_plan_items_are_excluded(make_note):
    note = make_note(plan=("Eczema - continue triamcinolone", "Shave biopsy of left forearm lesion"))
    text = render_note(note)
    assert "triamcinolone" in text
    assert "biopsy" not in text
    assert fingerprint_note(note) == fingerprint_note(make_note())


def test_empty_items_are_skipped_and_notes_kept():
    note = {
        "progressNotes": [
            {
                "sectionType": "ASSESSMENT_AND_PLAN",
                "items": [
                    {"elementType": "ASSESSMENT", "text": "   "},
                    {"elementType": "ASSESSMENT", "text": "Psoriasis", "note": "Start topical"},
                ],
            }
        ]
    }
    text = render_note(note)
    assert text.count("ASSESSMENT:") == 1
    assert "Note: Start topical" in text


def test_fingerprint_is_stable_md5_of_rendering(make_note):
    note = make_note()
    assert fingerprint_note(note) == fingerprint_text(render_note(note))
    assert len(fingerprint_note(note)) == 32
    assert fingerprint_note(note) != fingerprint_note(make_note(plan=("Eczema",)))


def test_find_item(make_note):
    section, item = find_item(make_note(), "OBJECTIVE", "VITAL_SIGNS")
    assert section["sectionType"] == "OBJECTIVE"
    assert item["text"].startswith("Height")

    section, item = find_item(make_note(vitals=None), "OBJECTIVE", "VITAL_SIGNS")
    assert section is None and item is None
