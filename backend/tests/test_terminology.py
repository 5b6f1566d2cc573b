from terminology import BusinessType, get_terminology, get_customer_label, get_service_label, get_book_now_label


def test_education_vocabulary():
    terms = get_terminology(BusinessType.EDUCATION)
    assert terms.customer == "Student"
    assert get_service_label("education") == "Lesson Types"
    assert get_book_now_label("education") == "Schedule Lesson"


def test_unknown_or_missing_type_uses_service_wording():
    assert get_terminology(None) == get_terminology("service")
    assert get_terminology("dog-grooming") == get_terminology(BusinessType.SERVICE)
    assert get_customer_label() == "Customers"
